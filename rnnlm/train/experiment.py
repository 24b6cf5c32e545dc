import math
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import torch


def generate_experiment_id(dataset: str) -> str:
    # e.g. ptb-20250101_120000-1a2b3c4d
    return f"{dataset}-{datetime.now().strftime('%Y%m%d_%H%M%S')}-{uuid.uuid4().hex[:8]}"


def experiment_path(save_path: str, experiment_id: str) -> str:
    return os.path.join(save_path, f"{experiment_id}.pt")


@dataclass
class ExperimentLog:
    """
    Everything needed to reproduce and evaluate the best model of a run.

    The trainer appends per-epoch perplexities with ``record()`` and, whenever
    validation perplexity reaches a new minimum, takes a ``snapshot()`` of the
    model parameters and writes the whole log with ``save()``.
    """

    options: dict[str, Any]
    dataset: str
    vocab: list[str]
    model_config: dict[str, Any]
    criterion: dict[str, Any]

    model_state: Optional[dict[str, torch.Tensor]] = None

    train_ppl: list[float] = field(default_factory=list)
    valid_ppl: list[float] = field(default_factory=list)

    min_valid_ppl: float = math.inf
    # epoch (1-based) of the best validation perplexity. 0 = none yet
    epoch: int = 0
    mean_grad_norm: Optional[float] = None

    def record(self, epoch: int, *, train_ppl: float, valid_ppl: float) -> bool:
        """Append an epoch's metrics. Returns True iff ``valid_ppl`` is a new minimum."""
        assert epoch == len(self.valid_ppl) + 1, "epochs must be recorded in order"

        self.train_ppl.append(train_ppl)
        self.valid_ppl.append(valid_ppl)

        if valid_ppl < self.min_valid_ppl:
            self.min_valid_ppl = valid_ppl
            self.epoch = epoch
            return True

        return False

    def snapshot(self, model: torch.nn.Module) -> None:
        # パラメータのみを CPU に deep copy する (勾配バッファは含まない)
        self.model_state = {
            name: tensor.detach().to("cpu", copy=True)
            for name, tensor in model.state_dict().items()
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "options": self.options,
            "dataset": self.dataset,
            "vocab": self.vocab,
            "model_config": self.model_config,
            "criterion": self.criterion,
            "model_state": self.model_state,
            "train_ppl": self.train_ppl,
            "valid_ppl": self.valid_ppl,
            "min_valid_ppl": self.min_valid_ppl,
            "epoch": self.epoch,
            "mean_grad_norm": self.mean_grad_norm,
        }

    def save(self, path: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        torch.save(self.to_dict(), path)

    @classmethod
    def load(cls, path: str) -> "ExperimentLog":
        raw = torch.load(path, map_location="cpu", weights_only=True)
        return cls(**raw)
