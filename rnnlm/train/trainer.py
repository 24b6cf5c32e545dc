import dataclasses
import json
import math
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, Optional

import click
from termcolor import colored
from yaspin import yaspin
from yaspin.core import Yaspin

from rnnlm.utils import format_number_abbrev

from .base import TrainingOptions
from .experiment import ExperimentLog, experiment_path, generate_experiment_id
from .schedule import LearningRateSchedule

GRAD_NORM_DECAY = 0.9


class TrainerState(Enum):
    TRAINING = "training"
    VALIDATING = "validating"
    EARLY_STOPPED = "early_stopped"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self in (TrainerState.EARLY_STOPPED, TrainerState.DONE)


class TrainingDivergedError(RuntimeError):
    pass


def perplexity(total_nll: float, num_tokens: int) -> float:
    """exp(Σ NLL / #tokens)"""
    if num_tokens <= 0:
        raise ValueError("Cannot compute perplexity over zero tokens")
    return math.exp(total_nll / num_tokens)


class TrainingIteration:
    _trainer: "BaseTrainer"

    spinner: Optional[Yaspin]

    i_epoch: int
    i_step: int
    # time steps consumed so far in this epoch
    consumed: int

    loss: float | None = None

    def __init__(
        self,
        trainer: "BaseTrainer",
        *,
        spinner: Optional[Yaspin],
        i_epoch: int,
        i_step: int,
        consumed: int,
    ):
        self._trainer = trainer
        self.spinner = spinner
        self.i_epoch = i_epoch
        self.i_step = i_step
        self.consumed = consumed

    def set_spinner_text(self) -> None:
        if self.spinner is None:
            return

        epoch_size = self._trainer.train_epoch_size
        progress = self.consumed / epoch_size if epoch_size > 0 else 0.0

        self.spinner.text = (
            colored(
                f"Epoch {self.i_epoch} Step {self.i_step + 1} ({progress:.1%})",
                color="cyan",
            )
            + " ("
            + f"lr: {self._trainer.learning_rate:.8f}"
            + (f", loss: {self.loss:.3f}" if self.loss is not None else "")
            + ")"
        )


class BaseTrainer(ABC):
    """
    Epoch loop with learning-rate schedule, early stopping and checkpointing.

    One epoch is a training pass followed by a validation pass. The run ends in
    ``EARLY_STOPPED`` once ``early_stop`` epochs pass without a new validation
    minimum, or in ``DONE`` when ``max_epoch`` is reached. The experiment log is
    written whenever (and only when) validation perplexity strictly improves.
    """

    options: TrainingOptions
    experiment_id: str

    log: ExperimentLog | None = None
    state: TrainerState = TrainerState.TRAINING

    # epochs since the last validation minimum
    trial: int = 0
    # EMA of the global gradient norm before clipping
    mean_grad_norm: float | None = None

    _spinner: Optional[Yaspin] = None

    def __init__(self, options: TrainingOptions):
        if not options.id:
            options = dataclasses.replace(
                options, id=generate_experiment_id(options.dataset)
            )
        self.options = options
        self.experiment_id = options.id

        self.lr_schedule = LearningRateSchedule(
            start_lr=options.start_lr,
            min_lr=options.min_lr,
            saturate=options.saturate,
            schedule=options.schedule,
        )

    @property
    def experiment_path(self) -> str:
        return experiment_path(self.options.save_path, self.experiment_id)

    def echo(self, message: str, **styles: Any) -> None:
        if self.options.silent:
            return
        if self._spinner is not None:
            self._spinner.write(click.style(message, **styles))
        else:
            click.secho(message, **styles)

    def run(self) -> ExperimentLog:
        if self.options.seed is not None:
            self.manual_seed(self.options.seed)

        # --------- 1) Initialize ---------
        self.echo("[1/3] Initialize", fg="green", bold=True)
        self.on_train_initialize()

        self.log = self.create_experiment_log()
        self.echo(
            f"vocab_size: {len(self.log.vocab):,}, device: {self.device_type}, "
            + f"parameters: {format_number_abbrev(self.num_parameters)}",
            fg="white",
        )

        # Save hyperparameters in JSON format
        os.makedirs(self.options.save_path, exist_ok=True)
        hparams_path = os.path.splitext(self.experiment_path)[0] + ".json"
        with open(hparams_path, "w") as f:
            json.dump(
                {"options": self.log.options, "model": self.log.model_config},
                f,
                indent=4,
            )

        # --------- 2) Training loop ---------
        self.echo("[2/3] Start training loop", fg="green", bold=True)
        self.set_learning_rate(self.lr_schedule.lr)

        with self._progress_spinner():
            self._run_epochs()

        # --------- 3) Finish ---------
        self.echo(
            f"[3/3] Finished ({self.state.value}): best validation PPL "
            + f"{self.log.min_valid_ppl:.3f} at epoch {self.log.epoch}",
            fg="bright_green",
            bold=True,
        )
        self.echo(
            "Evaluate model using: rnnlm evaluate --xplog "
            + self.experiment_path
            + (" --cuda" if self.options.cuda else ""),
        )

        return self.log

    def _run_epochs(self) -> None:
        assert self.log is not None

        epoch = 1
        while self.options.max_epoch <= 0 or epoch <= self.options.max_epoch:
            self.echo("")
            self.echo(f"Epoch #{epoch} :", fg="magenta", bold=True)

            # 1. training
            self.state = TrainerState.TRAINING
            started_at = time.perf_counter()
            train_ppl, n_steps = self._train_epoch(epoch)

            # learning rate decay
            lr = self.lr_schedule.step(epoch + 1)
            self.set_learning_rate(lr)

            self.echo(f"learning rate {lr}")
            if self.mean_grad_norm is not None:
                self.echo(f"mean gradParam norm {self.mean_grad_norm}")

            self.synchronize_device()
            speed = (time.perf_counter() - started_at) / max(1, n_steps)
            self.echo(f"Speed : {speed:f} sec/batch")
            self.echo(f"{colored('Training PPL : ', 'cyan')}{train_ppl:.3f}")

            # 2. cross-validation
            self.state = TrainerState.VALIDATING
            valid_ppl = self.evaluate()
            self.echo(f"{colored('Validation PPL : ', 'cyan')}{valid_ppl:.3f}")

            # 3. early-stopping
            self.trial += 1
            if self.log.record(epoch, train_ppl=train_ppl, valid_ppl=valid_ppl):
                self.echo(f"Found new minima. Saving to {self.experiment_path}")
                self.save_experiment()
                self.trial = 0
            elif self.trial >= self.options.early_stop:
                self.echo(f"No new minima found after {self.trial} epochs.")
                self.echo("Stopping experiment.")
                self.state = TrainerState.EARLY_STOPPED
                return

            epoch += 1

        self.state = TrainerState.DONE

    def _train_epoch(self, epoch: int) -> tuple[float, int]:
        """Run one training pass. Returns (perplexity, number of batches)."""
        self.on_epoch_start()

        total_nll = 0.0
        total_tokens = 0
        i_step = 0

        for i_step, (consumed, batch) in enumerate(self.batch_train_iter()):
            it = TrainingIteration(
                trainer=self,
                spinner=self._spinner,
                i_epoch=epoch,
                i_step=i_step,
                consumed=consumed,
            )

            nll, num_tokens = self.train_step(batch)
            if not math.isfinite(nll):
                raise TrainingDivergedError(
                    f"Loss diverged at epoch {epoch}, step {i_step + 1}: {nll}"
                )

            total_nll += nll
            total_tokens += num_tokens

            it.loss = nll / num_tokens
            it.set_spinner_text()

        return perplexity(total_nll, total_tokens), i_step + 1

    def save_experiment(self) -> None:
        assert self.log is not None

        self.snapshot_model(self.log)
        self.log.mean_grad_norm = self.mean_grad_norm
        self.log.save(self.experiment_path)

    def update_mean_grad_norm(self, norm: float) -> None:
        if self.mean_grad_norm is None:
            self.mean_grad_norm = norm
        else:
            self.mean_grad_norm = (
                self.mean_grad_norm * GRAD_NORM_DECAY + norm * (1 - GRAD_NORM_DECAY)
            )

    @property
    def train_epoch_size(self) -> int:
        return self.options.train_size

    @contextmanager
    def _progress_spinner(self):
        if not self.options.progress or self.options.silent:
            yield
            return

        with yaspin().cyan as spinner:
            self._spinner = spinner
            try:
                yield
            finally:
                self._spinner = None

    # --- Override by subclass ---

    @abstractmethod
    def manual_seed(self, seed: int) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def device_type(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def num_parameters(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def on_train_initialize(self) -> None:
        """Load data, build the model, optimizer and criterion."""
        raise NotImplementedError

    @abstractmethod
    def create_experiment_log(self) -> ExperimentLog:
        raise NotImplementedError

    @abstractmethod
    def on_epoch_start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def batch_train_iter(self) -> Iterator[tuple[int, Any]]:
        """Yield ``(time steps consumed, batch)`` for one training epoch."""
        raise NotImplementedError

    @abstractmethod
    def train_step(self, batch: Any) -> tuple[float, int]:
        """
        Forward, backward and optimizer update on one batch.

        Returns:
            tuple[float, int]: summed NLL over the batch's target tokens, and
            the number of target tokens.
        """
        raise NotImplementedError

    @abstractmethod
    def evaluate(self) -> float:
        """Validation perplexity. Must not update parameters."""
        raise NotImplementedError

    @property
    @abstractmethod
    def learning_rate(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def set_learning_rate(self, lr: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def synchronize_device(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def snapshot_model(self, log: ExperimentLog) -> None:
        raise NotImplementedError
