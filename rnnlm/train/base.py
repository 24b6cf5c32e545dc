from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from rnnlm.common import DEFAULT_SAVE_PATH
from rnnlm.model.base import CellType, StatePolicy


@dataclass(frozen=True)
class TrainingOptions:
    # --- optimization
    start_lr: float = 0.05
    min_lr: float = 0.00001
    # 線形減衰で min_lr に到達するまでのエポック数
    saturate: int = 400
    # epoch -> learning rate. 該当エポックが無ければ線形減衰
    schedule: Optional[Mapping[int, float]] = None
    momentum: float = 0.9
    adam: bool = False
    adam_betas: tuple[float, float] = (0.0, 0.999)
    # max L2 norm of all gradients concatenated. <= 0 disables clipping
    cutoff: float = -1.0
    batch_size: int = 32
    max_epoch: int = 1000
    # patience (epochs without a new validation minimum)
    early_stop: int = 50

    # --- device
    cuda: bool = False
    device: int = 0

    # --- model
    cell: CellType = CellType.RNN
    state_policy: Optional[StatePolicy] = None
    seq_len: int = 5
    input_size: int = -1
    hidden_sizes: tuple[int, ...] = (200,)
    dropout: float = 0.0
    uniform: float = 0.1

    # --- data
    dataset: str = "ptb"
    data_dir: Optional[str] = None
    train_size: int = -1
    valid_size: int = -1

    # --- experiment
    save_path: str = str(DEFAULT_SAVE_PATH)
    id: str = ""
    seed: Optional[int] = 4649
    progress: bool = False
    silent: bool = False

    def __post_init__(self):
        if not self.hidden_sizes:
            raise ValueError("hidden_sizes must contain at least one layer")
        if any(h <= 0 for h in self.hidden_sizes):
            raise ValueError(f"hidden_sizes must be positive: {self.hidden_sizes}")
        if self.input_size != -1 and self.input_size <= 0:
            raise ValueError(f"input_size must be positive or -1: {self.input_size}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {self.batch_size}")
        if self.seq_len <= 0:
            raise ValueError(f"seq_len must be positive: {self.seq_len}")
        if self.dropout >= 1.0:
            raise ValueError(f"dropout must be less than 1: {self.dropout}")
        if self.start_lr <= 0:
            raise ValueError(f"start_lr must be positive: {self.start_lr}")
        if self.min_lr < 0:
            raise ValueError(f"min_lr must not be negative: {self.min_lr}")
        if self.saturate <= 0:
            raise ValueError(f"saturate must be positive: {self.saturate}")
        if self.train_size != -1 and self.train_size <= 0:
            raise ValueError(f"train_size must be positive or -1: {self.train_size}")
        if self.valid_size != -1 and self.valid_size <= 0:
            raise ValueError(f"valid_size must be positive or -1: {self.valid_size}")
        if self.schedule is not None:
            for epoch, lr in self.schedule.items():
                if epoch < 1:
                    raise ValueError(f"schedule epoch must be >= 1: {epoch}")
                if lr <= 0:
                    raise ValueError(f"schedule rate must be positive: {epoch}={lr}")
        if len(self.adam_betas) != 2 or not all(0.0 <= b < 1.0 for b in self.adam_betas):
            raise ValueError(f"adam_betas must be two values in [0, 1): {self.adam_betas}")

    @property
    def resolved_input_size(self) -> int:
        return self.hidden_sizes[0] if self.input_size == -1 else self.input_size

    @property
    def resolved_state_policy(self) -> StatePolicy:
        if self.state_policy is None:
            return self.cell.default_state_policy
        return self.state_policy

    def to_dict(self) -> dict[str, Any]:
        """Plain-type dict, safe for JSON and ``torch.load(weights_only=True)``."""
        d = asdict(self)
        d["schedule"] = dict(self.schedule) if self.schedule is not None else None
        d["adam_betas"] = list(self.adam_betas)
        d["hidden_sizes"] = list(self.hidden_sizes)
        d["cell"] = self.cell.value
        d["state_policy"] = self.state_policy.value if self.state_policy else None
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TrainingOptions":
        d = dict(d)
        if d.get("schedule") is not None:
            # JSON 経由だとキーが文字列になる
            d["schedule"] = {int(k): float(v) for k, v in d["schedule"].items()}
        d["adam_betas"] = tuple(d["adam_betas"])
        d["hidden_sizes"] = tuple(d["hidden_sizes"])
        d["cell"] = CellType(d["cell"])
        if d.get("state_policy") is not None:
            d["state_policy"] = StatePolicy(d["state_policy"])
        return cls(**d)
