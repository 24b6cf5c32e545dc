from typing import Optional

import click

from rnnlm.common import DEFAULT_SAVE_PATH
from rnnlm.model.base import CellType, StatePolicy
from rnnlm.train import TrainingOptions

from .params import FLOAT_PAIR, INT_LIST, SCHEDULE


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def main():
    pass


@click.command("train")
# --- optimization
@click.option("--startlr", "start_lr", default=0.05, type=float, help="Learning rate at epoch 1")
@click.option("--minlr", "min_lr", default=0.00001, type=float, help="Minimum learning rate")
@click.option(
    "--saturate",
    "saturate",
    default=400,
    type=int,
    help="Epoch at which linear decayed LR will reach minlr",
)
@click.option(
    "--schedule",
    "schedule",
    default=None,
    type=SCHEDULE,
    help="Per-epoch rate overrides, e.g. '5=0.5,6=0.25'. Other epochs decay linearly",
)
@click.option("--momentum", "momentum", default=0.9, type=float, help="SGD momentum")
@click.option("--adam", "adam", is_flag=True, default=False, help="Use Adam instead of SGD")
@click.option(
    "--adamconfig",
    "adam_betas",
    default="0,0.999",
    type=FLOAT_PAIR,
    help="Adam beta1 and beta2",
)
@click.option(
    "--cutoff",
    "cutoff",
    default=-1.0,
    type=float,
    help="Max L2 norm of all gradients concatenated. <= 0 disables clipping",
)
@click.option("--batchsize", "batch_size", default=32, type=int, help="Number of examples per batch")
@click.option("--maxepoch", "max_epoch", default=1000, type=int, help="Maximum number of epochs to run")
@click.option(
    "--earlystop",
    "early_stop",
    default=50,
    type=int,
    help="Maximum number of epochs to wait to find a better local minima",
)
# --- device
@click.option("--cuda", "cuda", is_flag=True, default=False, help="Use CUDA")
@click.option("--device", "device", default=0, type=int, help="CUDA device index")
# --- model
@click.option("--lstm", "lstm", is_flag=True, default=False, help="Use LSTM instead of RNN")
@click.option("--gru", "gru", is_flag=True, default=False, help="Use GRU instead of RNN")
@click.option("--mfru", "mfru", is_flag=True, default=False, help="Use MuFuRu instead of RNN")
@click.option(
    "--remember",
    "state_policy",
    default=None,
    type=click.Choice([p.value for p in StatePolicy]),
    help="When the recurrent state is carried between batches (default: per cell)",
)
@click.option("--seqlen", "seq_len", default=5, type=int, help="Sequence length: back-propagate through time")
@click.option(
    "--inputsize",
    "input_size",
    default=-1,
    type=int,
    help="Size of the lookup table embeddings. -1 defaults to hiddensize[1]",
)
@click.option(
    "--hiddensize",
    "hidden_sizes",
    default="200",
    type=INT_LIST,
    help="Number of hidden units per layer, e.g. '200,200'",
)
@click.option("--dropout", "dropout", default=0.0, type=float, help="Dropout probability. <= 0 disables it")
@click.option(
    "--uniform",
    "uniform",
    default=0.1,
    type=float,
    help="Initialize parameters using uniform distribution between -uniform and uniform",
)
# --- data
@click.option("--dataset", "dataset", default="ptb", type=str, help="Dataset name")
@click.option(
    "--data-dir",
    "data_dir",
    default=None,
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    help="Directory with <dataset>.train.txt, <dataset>.valid.txt and <dataset>.test.txt",
)
@click.option("--trainsize", "train_size", default=-1, type=int, help="Number of train time-steps seen between each epoch")
@click.option("--validsize", "valid_size", default=-1, type=int, help="Number of valid time-steps used for early stopping")
# --- experiment
@click.option(
    "--savepath",
    "save_path",
    default=str(DEFAULT_SAVE_PATH),
    type=click.Path(file_okay=False, dir_okay=True, exists=False),
    help="Path to directory where experiment log (includes model) will be saved",
)
@click.option("--id", "id", default="", type=str, help="Id string of this experiment (used to name output file)")
@click.option("--seed", "seed", default=4649, type=int, help="Random seed")
@click.option("--progress", "progress", is_flag=True, default=False, help="Show a progress spinner")
@click.option("--silent", "silent", is_flag=True, default=False, help="Don't print anything to stdout")
def train_command(
    *,
    lstm: bool,
    gru: bool,
    mfru: bool,
    state_policy: Optional[str],
    **kwargs,
):
    from rnnlm.train.torch import PyTorchTrainer

    cells = [
        cell
        for cell, enabled in ((CellType.LSTM, lstm), (CellType.GRU, gru), (CellType.MUFURU, mfru))
        if enabled
    ]
    if len(cells) > 1:
        raise click.UsageError("--lstm, --gru and --mfru are mutually exclusive")

    try:
        options = TrainingOptions(
            cell=cells[0] if cells else CellType.RNN,
            state_policy=StatePolicy(state_policy) if state_policy else None,
            **kwargs,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    if not options.silent:
        click.secho(
            f"Using torch trainer: cell={options.cell.value}, "
            + f"hidden_sizes={list(options.hidden_sizes)}, seq_len={options.seq_len}, "
            + f"batch_size={options.batch_size}, "
            + ("adam" if options.adam else "sgd")
            + f", start_lr={options.start_lr}, seed={options.seed}",
            fg="white",
        )

    trainer = PyTorchTrainer(options)
    trainer.run()


@click.command("evaluate")
@click.option(
    "--xplog",
    "xplog_path",
    required=True,
    type=click.Path(file_okay=True, dir_okay=False, exists=True),
    help="Path to a saved experiment log",
)
@click.option("--cuda", "cuda", is_flag=True, default=False, help="Use CUDA")
@click.option("--device", "device", default=0, type=int, help="CUDA device index")
@click.option(
    "--split",
    "split",
    default="test",
    type=click.Choice(["test", "valid"]),
    help="Which split to evaluate",
)
def evaluate_command(xplog_path: str, cuda: bool, device: int, split: str):
    import torch

    from rnnlm.train.dataset import SequenceLoader, Vocabulary, batchify, load_corpus
    from rnnlm.train.experiment import ExperimentLog
    from rnnlm.train.torch import SequenceNLLLoss, evaluate_perplexity, load_model

    log = ExperimentLog.load(xplog_path)
    options = TrainingOptions.from_dict(log.options)

    if cuda:
        if not torch.cuda.is_available():
            raise click.UsageError("--cuda was given but CUDA is not available")
        torch_device = torch.device("cuda", device)
    else:
        torch_device = torch.device("cpu")

    # 学習時と同じ語彙で符号化する
    corpus = load_corpus(
        options.dataset,
        data_dir=options.data_dir,
        vocab=Vocabulary.from_words(log.vocab),
    )
    ids = corpus.test if split == "test" else corpus.valid
    loader = SequenceLoader(batchify(ids, options.batch_size).to(torch_device))

    model = load_model(log, torch_device)
    ppl = evaluate_perplexity(
        model, loader, SequenceNLLLoss(), seq_len=options.seq_len
    )

    click.secho(
        f"Experiment {options.id} (best epoch {log.epoch}, "
        + f"validation PPL {log.min_valid_ppl:.3f})",
        fg="white",
    )
    click.secho(f"{split.capitalize()} PPL : {ppl:.3f}", fg="green", bold=True)


@click.command("generate")
@click.option(
    "--xplog",
    "xplog_path",
    required=True,
    type=click.Path(file_okay=True, dir_okay=False, exists=True),
    help="Path to a saved experiment log",
)
@click.option("--prompt", "prompt", required=True, type=str, help="Words to start from")
@click.option("--max-new-tokens", "max_new_tokens", default=30, type=int, help="Number of words to sample")
@click.option("--top-k", "top_k", default=20, type=int, help="Sample from the k most likely words. 0 means greedy")
@click.option("--temperature", "temperature", default=0.8, type=float, help="Sampling temperature")
@click.option("--seed", "seed", default=None, type=int, help="Random seed")
def generate_command(
    xplog_path: str,
    prompt: str,
    max_new_tokens: int,
    top_k: int,
    temperature: float,
    seed: Optional[int],
):
    import torch

    from rnnlm.train.dataset import Vocabulary
    from rnnlm.train.experiment import ExperimentLog
    from rnnlm.train.torch import load_model

    if not prompt.split():
        raise click.BadParameter("prompt must contain at least one word", param_hint="--prompt")
    if temperature <= 0:
        raise click.BadParameter("temperature must be positive", param_hint="--temperature")

    if seed is not None:
        torch.manual_seed(seed)

    log = ExperimentLog.load(xplog_path)
    vocab = Vocabulary.from_words(log.vocab)
    model = load_model(log)

    ids = vocab.encode(prompt.split())
    output_ids = model.generate(
        ids,
        max_new_tokens=max_new_tokens,
        top_k=top_k if top_k > 0 else None,
        temperature=temperature,
        eos_id=vocab.eos_id,
    )

    click.secho(prompt, fg="cyan", nl=False)
    click.echo(" " + " ".join(vocab.decode(output_ids[len(ids) :])))


main.add_command(train_command)
main.add_command(evaluate_command)
main.add_command(generate_command)


if __name__ == "__main__":
    main()
