# Copyright 2025 Takanori Ishikawa
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from typing import Any, Iterable, Iterator, Optional

import torch
import torch.nn.functional as F
from torch.optim import SGD, Adam, Optimizer

from rnnlm.model.base import RNNLMConfig
from rnnlm.model.torch import RecurrentLM, init_uniform_

from .base import TrainingOptions
from .dataset import Corpus, SequenceLoader, batchify, load_corpus
from .experiment import ExperimentLog
from .trainer import BaseTrainer, perplexity


class SequenceNLLLoss(torch.nn.Module):
    """
    Negative log-likelihood of each time step, summed over the sequence and
    averaged over the batch.
    """

    def forward(self, log_probs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        # log_probs: [T, B, V], targets: [T, B]
        vocab_size = log_probs.size(-1)
        nll = F.nll_loss(
            log_probs.reshape(-1, vocab_size),
            targets.reshape(-1),
            reduction="sum",
        )
        return nll / targets.size(1)

    def config(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "reduction": "sum over time steps, mean over batch",
        }


def clip_gradients(parameters: Iterable[torch.nn.Parameter], cutoff: float) -> float:
    """
    Scale all gradients so their global L2 norm is at most ``cutoff``.

    Returns the norm before clipping. Gradients are left untouched when it is
    already below ``cutoff``.
    """
    return float(torch.nn.utils.clip_grad_norm_(parameters, cutoff))


def build_optimizer(
    model: torch.nn.Module, options: TrainingOptions, lr: float
) -> Optimizer:
    if options.adam:
        return Adam(model.parameters(), lr=lr, betas=options.adam_betas)
    return SGD(model.parameters(), lr=lr, momentum=options.momentum)


@torch.no_grad()
def evaluate_perplexity(
    model: RecurrentLM,
    loader: SequenceLoader,
    criterion: SequenceNLLLoss,
    *,
    seq_len: int,
    epoch_size: int = -1,
    device: Optional[torch.device] = None,
) -> float:
    """Forward-only pass in eval mode, starting from a fresh recurrent state."""
    model.eval()
    model.reset_state()

    total_nll = 0.0
    total_tokens = 0

    for _, inputs, targets in loader.subiter(seq_len, epoch_size):
        if device is not None:
            inputs = inputs.to(device)
            targets = targets.to(device)

        loss = criterion(model(inputs), targets)

        total_nll += loss.item() * targets.size(1)
        total_tokens += targets.numel()

    return perplexity(total_nll, total_tokens)


def load_model(log: ExperimentLog, device: Optional[torch.device] = None) -> RecurrentLM:
    """Rebuild the best model stored in an experiment log."""
    if log.model_state is None:
        raise ValueError("The experiment log has no model snapshot")

    model = RecurrentLM(RNNLMConfig.from_dict(log.model_config))
    model.load_state_dict(log.model_state)
    if device is not None:
        model = model.to(device)
    return model


class PyTorchTrainer(BaseTrainer):
    model: RecurrentLM | None = None
    device: torch.device

    corpus: Corpus | None = None
    train_loader: SequenceLoader | None = None
    validation_loader: SequenceLoader | None = None

    optimizer: Optimizer | None = None
    criterion: SequenceNLLLoss | None = None

    def __init__(
        self,
        /,
        options: TrainingOptions,
        *,
        corpus: Optional[Corpus] = None,
    ) -> None:
        super().__init__(options)
        self.device = detect_device(options)
        self.corpus = corpus

    def manual_seed(self, seed: int) -> None:
        torch.manual_seed(seed)

    @property
    def device_type(self) -> str:
        return self.device.type

    @property
    def num_parameters(self) -> int:
        assert self.model is not None
        return self.model.num_parameters()

    def on_train_initialize(self) -> None:
        options = self.options

        if self.corpus is None:
            self.corpus = load_corpus(options.dataset, data_dir=options.data_dir)
        corpus = self.corpus

        # seqlen x batchsize の系列として扱う
        self.train_loader = SequenceLoader(
            batchify(corpus.train, options.batch_size).to(self.device)
        )
        self.validation_loader = SequenceLoader(
            batchify(corpus.valid, options.batch_size).to(self.device)
        )

        config = RNNLMConfig(
            vocab_size=len(corpus.vocab),
            input_size=options.resolved_input_size,
            hidden_sizes=options.hidden_sizes,
            cell=options.cell,
            dropout=options.dropout,
            state_policy=options.resolved_state_policy,
        )
        model = RecurrentLM(config)
        init_uniform_(model, options.uniform)
        self.model = model.to(self.device)

        self.optimizer = build_optimizer(self.model, options, self.lr_schedule.lr)
        self.criterion = SequenceNLLLoss()

        self.echo(
            f"Train set split into {options.batch_size} sequences of length "
            + f"{self.train_loader.size:,}",
            fg="cyan",
        )

    def create_experiment_log(self) -> ExperimentLog:
        assert self.model is not None
        assert self.corpus is not None
        assert self.criterion is not None

        return ExperimentLog(
            options=self.options.to_dict(),
            dataset=self.options.dataset,
            vocab=self.corpus.vocab.words,
            model_config=self.model.cfg.to_dict(),
            criterion=self.criterion.config(),
        )

    def on_epoch_start(self) -> None:
        assert self.model is not None
        self.model.train()
        self.model.reset_state()

    def batch_train_iter(self) -> Iterator[tuple[int, Any]]:
        assert self.train_loader is not None

        for consumed, inputs, targets in self.train_loader.subiter(
            self.options.seq_len, self.options.train_size
        ):
            yield consumed, (inputs, targets)

    @property
    def train_epoch_size(self) -> int:
        if self.options.train_size < 0 and self.train_loader is not None:
            return self.train_loader.size
        return self.options.train_size

    def train_step(self, batch: Any) -> tuple[float, int]:
        assert self.model is not None
        assert self.optimizer is not None
        assert self.criterion is not None

        inputs, targets = batch

        self.optimizer.zero_grad()

        log_probs = self.model(inputs)
        loss = self.criterion(log_probs, targets)
        loss.backward()

        # 勾配のクリッピング
        if self.options.cutoff > 0:
            norm = clip_gradients(self.model.parameters(), self.options.cutoff)
            self.update_mean_grad_norm(norm)

        self.optimizer.step()

        return loss.item() * targets.size(1), targets.numel()

    def evaluate(self) -> float:
        assert self.model is not None
        assert self.validation_loader is not None
        assert self.criterion is not None

        return evaluate_perplexity(
            self.model,
            self.validation_loader,
            self.criterion,
            seq_len=self.options.seq_len,
            epoch_size=self.options.valid_size,
        )

    @property
    def learning_rate(self) -> float:
        assert self.optimizer is not None
        return self.optimizer.param_groups[0]["lr"]

    def set_learning_rate(self, lr: float) -> None:
        assert self.optimizer is not None
        for param_group in self.optimizer.param_groups:
            param_group["lr"] = lr

    def synchronize_device(self) -> None:
        if self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def snapshot_model(self, log: ExperimentLog) -> None:
        assert self.model is not None
        log.snapshot(self.model)


def detect_device(options: TrainingOptions) -> torch.device:
    if not options.cuda:
        return torch.device("cpu")

    if not torch.cuda.is_available():
        raise RuntimeError("--cuda was given but CUDA is not available")

    torch.cuda.set_device(options.device)
    return torch.device("cuda", options.device)
