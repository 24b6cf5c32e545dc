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
from typing import Optional, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from .base import CellType, RNNLMConfig, StatePolicy

# Hidden state of one layer: `h` of shape [1, B, H], or `(h, c)` for LSTM
LayerState = Union[torch.Tensor, tuple[torch.Tensor, torch.Tensor]]


class SigmoidRNN(nn.Module):
    """Elman network with a sigmoid transfer: h[t] = σ(W x[t] + U h[t-1])

    Takes the same (input, h0) -> (output, h_n) shapes as ``nn.RNN``, which only
    offers tanh and relu.
    """

    def __init__(self, input_size: int, hidden_size: int):
        super().__init__()
        self.hidden_size = hidden_size
        self.input = nn.Linear(input_size, hidden_size)
        self.recurrent = nn.Linear(hidden_size, hidden_size)

    def forward(
        self, x: torch.Tensor, h0: torch.Tensor | None = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        # x: [T, B, I]
        _, B, _ = x.shape
        h = x.new_zeros(B, self.hidden_size) if h0 is None else h0[0]

        # 入力側の射影は全時刻まとめて計算できる
        projected = self.input(x)  # [T, B, H]

        outputs = []
        for x_t in projected:
            h = torch.sigmoid(x_t + self.recurrent(h))
            outputs.append(h)

        return torch.stack(outputs), h.unsqueeze(0)


MUFURU_OPS = ("keep", "replace", "mul", "diff", "forget", "sqrt_diff", "max", "min")


class MuFuRu(nn.Module):
    """Multi-Function Recurrent Unit (Weissenborn & Rocktäschel, 2016).

    Each hidden unit learns a soft mixture over a small set of binary operations
    between the previous state ``s`` and a candidate feature ``v``.
    """

    def __init__(self, input_size: int, hidden_size: int, eps: float = 1e-8):
        super().__init__()
        self.hidden_size = hidden_size
        self.eps = eps
        self.reset_gate = nn.Linear(input_size + hidden_size, hidden_size)
        self.feature = nn.Linear(input_size + hidden_size, hidden_size)
        self.op_weights = nn.Linear(
            input_size + hidden_size, hidden_size * len(MUFURU_OPS)
        )

    def step(self, x: torch.Tensor, s: torch.Tensor) -> torch.Tensor:
        # x: [B, I], s: [B, H]
        xs = torch.cat([x, s], dim=-1)
        r = torch.sigmoid(self.reset_gate(xs))
        v = torch.tanh(self.feature(torch.cat([x, r * s], dim=-1)))

        # [B, H, n_ops] - 各ユニットごとに演算の重みを softmax で正規化
        p = self.op_weights(xs).view(-1, self.hidden_size, len(MUFURU_OPS))
        p = torch.softmax(p, dim=-1)

        ops = torch.stack(
            [
                s,
                v,
                s * v,
                (s - v).abs(),
                torch.zeros_like(s),
                torch.sqrt((s * s - v * v).abs() + self.eps),
                torch.maximum(s, v),
                torch.minimum(s, v),
            ],
            dim=-1,
        )

        return (p * ops).sum(dim=-1)

    def forward(
        self, x: torch.Tensor, h0: torch.Tensor | None = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        _, B, _ = x.shape
        s = x.new_zeros(B, self.hidden_size) if h0 is None else h0[0]

        outputs = []
        for x_t in x:
            s = self.step(x_t, s)
            outputs.append(s)

        return torch.stack(outputs), s.unsqueeze(0)


def build_recurrent_layer(cell: CellType, input_size: int, hidden_size: int) -> nn.Module:
    match cell:
        case CellType.RNN:
            return SigmoidRNN(input_size, hidden_size)
        case CellType.LSTM:
            return nn.LSTM(input_size, hidden_size)
        case CellType.GRU:
            return nn.GRU(input_size, hidden_size)
        case CellType.MUFURU:
            return MuFuRu(input_size, hidden_size)
        case _:
            raise ValueError(f"Unknown cell type: {cell}")


def _detach_state(state: LayerState) -> LayerState:
    if isinstance(state, tuple):
        return (state[0].detach(), state[1].detach())
    return state.detach()


def _state_batch_size(state: LayerState) -> int:
    h = state[0] if isinstance(state, tuple) else state
    return h.size(1)


class RecurrentLM(nn.Module):
    """Embedding -> stacked recurrent layers -> linear -> log-softmax.

    Inputs are time-major: ``input_ids`` is [T, B] and the output is [T, B, V]
    log-probabilities.

    The final state of every layer is kept on the instance and used as the
    initial state of the next call when ``state_policy`` says so for the current
    mode (train / eval). Kept states are detached, so backpropagation through time
    stops at batch boundaries. Call ``reset_state()`` to start from zeros again.
    """

    states: list[Optional[LayerState]]

    def __init__(self, cfg: RNNLMConfig):
        super().__init__()
        self.cfg = cfg
        self.state_policy = cfg.state_policy

        self.embedding = nn.Embedding(cfg.vocab_size, cfg.input_size)
        # Dropout はパラメータを持たないので、埋め込み後と各層の後で共有する
        self.dropout = nn.Dropout(cfg.dropout) if cfg.dropout > 0 else nn.Identity()

        layers: list[nn.Module] = []
        input_size = cfg.input_size
        for hidden_size in cfg.hidden_sizes:
            layers.append(build_recurrent_layer(cfg.cell, input_size, hidden_size))
            input_size = hidden_size

        self.layers = nn.ModuleList(layers)
        self.head = nn.Linear(input_size, cfg.vocab_size)

        self.states = [None] * len(self.layers)

    def reset_state(self) -> None:
        self.states = [None] * len(self.layers)

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        remember = self.state_policy.remembers(self.training)
        batch_size = input_ids.size(1)

        x = self.dropout(self.embedding(input_ids))  # [T, B, E]

        for i, layer in enumerate(self.layers):
            state = self.states[i] if remember else None
            if state is not None and _state_batch_size(state) != batch_size:
                state = None

            x, new_state = layer(x, state)
            self.states[i] = _detach_state(new_state) if remember else None

            x = self.dropout(x)

        return F.log_softmax(self.head(x), dim=-1)

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters() if p.requires_grad)

    @torch.no_grad()
    def generate(
        self,
        ids: list[int],
        *,
        max_new_tokens: int = 32,
        top_k: Optional[int] = 20,
        temperature: float = 0.8,
        eos_id: Optional[int] = None,
    ) -> list[int]:
        """Continue ``ids`` one token at a time, carrying the recurrent state."""
        if not ids:
            raise ValueError("ids must not be empty")

        was_training = self.training
        policy = self.state_policy
        device = self.head.weight.device

        self.eval()
        self.state_policy = StatePolicy.BOTH
        self.reset_state()

        out = list(ids)
        try:
            prompt = torch.tensor(ids, dtype=torch.long, device=device).unsqueeze(1)
            log_probs = self(prompt)[-1, 0]  # [V]

            for _ in range(max_new_tokens):
                if top_k is None or temperature <= 0.0:
                    next_id = int(log_probs.argmax())
                else:
                    k = min(top_k, log_probs.size(-1))
                    topk_logits, topk_idx = torch.topk(log_probs / temperature, k)
                    sampled = torch.multinomial(torch.softmax(topk_logits, dim=-1), 1)
                    next_id = int(topk_idx[sampled])

                out.append(next_id)
                if eos_id is not None and next_id == eos_id:
                    break

                next_input = torch.tensor([[next_id]], dtype=torch.long, device=device)
                log_probs = self(next_input)[-1, 0]
        finally:
            self.state_policy = policy
            self.reset_state()
            self.train(was_training)

        return out


def init_uniform_(model: nn.Module, magnitude: float) -> None:
    """Redraw every parameter from U(-magnitude, magnitude).

    A non-positive magnitude keeps each layer's own default initialization.
    """
    if magnitude <= 0:
        return
    for param in model.parameters():
        nn.init.uniform_(param, -magnitude, magnitude)
