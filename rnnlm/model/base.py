from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class CellType(str, Enum):
    RNN = "rnn"
    LSTM = "lstm"
    GRU = "gru"
    MUFURU = "mufuru"

    @property
    def is_gated(self) -> bool:
        return self is not CellType.RNN

    @property
    def default_state_policy(self) -> "StatePolicy":
        return StatePolicy.BOTH if self.is_gated else StatePolicy.EVAL


class StatePolicy(str, Enum):
    """When the recurrent state carries over from one forward call to the next."""

    NEVER = "never"
    EVAL = "eval"  # only in eval mode
    BOTH = "both"  # in train and eval mode

    def remembers(self, training: bool) -> bool:
        if self is StatePolicy.BOTH:
            return True
        if self is StatePolicy.EVAL:
            return not training
        return False


@dataclass(frozen=True)
class RNNLMConfig:
    vocab_size: int
    input_size: int  # embedding width
    hidden_sizes: tuple[int, ...]  # one entry per stacked recurrent layer
    cell: CellType = CellType.RNN
    dropout: float = 0.0
    state_policy: StatePolicy = StatePolicy.EVAL

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["hidden_sizes"] = list(self.hidden_sizes)
        d["cell"] = self.cell.value
        d["state_policy"] = self.state_policy.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RNNLMConfig":
        return cls(
            vocab_size=int(d["vocab_size"]),
            input_size=int(d["input_size"]),
            hidden_sizes=tuple(int(h) for h in d["hidden_sizes"]),
            cell=CellType(d["cell"]),
            dropout=float(d["dropout"]),
            state_policy=StatePolicy(d["state_policy"]),
        )
