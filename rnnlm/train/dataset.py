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

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Union

import numpy as np
import torch
from datasets import DatasetDict, load_dataset

from rnnlm.common import DATASET_CACHE_DIR
from rnnlm.datasets import get_dataset_config

EOS_TOKEN = "<eos>"
UNK_TOKEN = "<unk>"


def tokenize_line(text: str) -> list[str]:
    """空白で単語に分割し、行末に <eos> を付ける。空行はトークンなし"""
    words = text.split()
    if not words:
        return []
    return words + [EOS_TOKEN]


class Vocabulary:
    """Word <-> id mapping. ``<eos>`` and ``<unk>`` always come first."""

    def __init__(self, words: Iterable[str] = ()):
        self.id2word: list[str] = []
        self.word2id: dict[str, int] = {}

        for word in (EOS_TOKEN, UNK_TOKEN):
            self.add(word)
        for word in words:
            self.add(word)

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "Vocabulary":
        return cls(word for line in lines for word in tokenize_line(line))

    @classmethod
    def from_words(cls, words: Sequence[str]) -> "Vocabulary":
        """Restore a vocabulary saved with ``words`` (index = id)."""
        vocab = cls(words)
        assert vocab.id2word == list(words), "special tokens must come first"
        return vocab

    def add(self, word: str) -> int:
        if word not in self.word2id:
            self.word2id[word] = len(self.id2word)
            self.id2word.append(word)
        return self.word2id[word]

    def __len__(self) -> int:
        return len(self.id2word)

    def __contains__(self, word: object) -> bool:
        return word in self.word2id

    @property
    def words(self) -> list[str]:
        return list(self.id2word)

    @property
    def eos_id(self) -> int:
        return self.word2id[EOS_TOKEN]

    @property
    def unk_id(self) -> int:
        return self.word2id[UNK_TOKEN]

    def encode(self, words: Iterable[str]) -> list[int]:
        unk_id = self.unk_id
        return [self.word2id.get(w, unk_id) for w in words]

    def decode(self, ids: Iterable[int]) -> list[str]:
        return [self.id2word[i] for i in ids]


def encode_lines(lines: Iterable[str], vocab: Vocabulary) -> torch.Tensor:
    """Concatenate all lines into one 1-D int64 id stream."""
    ids = [i for line in lines for i in vocab.encode(tokenize_line(line))]
    return torch.from_numpy(np.asarray(ids, dtype=np.int64))


@dataclass(frozen=True)
class Corpus:
    vocab: Vocabulary
    train: torch.Tensor
    valid: torch.Tensor
    test: torch.Tensor


def corpus_from_lines(
    train_lines: Sequence[str],
    valid_lines: Sequence[str],
    test_lines: Sequence[str],
    *,
    vocab: Optional[Vocabulary] = None,
) -> Corpus:
    # 語彙は学習データのみから作る。検証・テストの未知語は <unk>
    if vocab is None:
        vocab = Vocabulary.from_lines(train_lines)

    return Corpus(
        vocab=vocab,
        train=encode_lines(train_lines, vocab),
        valid=encode_lines(valid_lines, vocab),
        test=encode_lines(test_lines, vocab),
    )


def load_corpus(
    dataset: str = "ptb",
    *,
    data_dir: Optional[Union[str, Path]] = None,
    cache_dir: Optional[Union[str, Path]] = None,
    vocab: Optional[Vocabulary] = None,
) -> Corpus:
    """
    Load the train / validation / test splits of a corpus.

    With ``data_dir``, reads ``<dataset>.train.txt``, ``<dataset>.valid.txt`` and
    ``<dataset>.test.txt`` from that directory. Otherwise ``dataset`` is looked up
    in ``rnnlm.datasets.DATASETS`` and fetched from the Hugging Face Hub.

    The vocabulary is built from the training split unless ``vocab`` is given.
    """
    cache_dir = str(cache_dir or DATASET_CACHE_DIR)

    if data_dir is not None:
        splits = load_dataset(
            "text",
            data_files={
                "train": os.path.join(data_dir, f"{dataset}.train.txt"),
                "validation": os.path.join(data_dir, f"{dataset}.valid.txt"),
                "test": os.path.join(data_dir, f"{dataset}.test.txt"),
            },
            cache_dir=cache_dir,
        )
        column = "text"
        split_names = ("train", "validation", "test")
    else:
        config = get_dataset_config(dataset)
        kwargs = {"trust_remote_code": True} if config.trust_remote_code else {}
        splits = load_dataset(
            config.path,
            config.name,
            cache_dir=cache_dir,
            **kwargs,
        )
        column = config.content_column
        split_names = (config.train_split, config.validation_split, config.test_split)

    assert isinstance(splits, DatasetDict)
    train_lines, valid_lines, test_lines = (
        splits[name][column] for name in split_names
    )

    return corpus_from_lines(train_lines, valid_lines, test_lines, vocab=vocab)


def batchify(ids: torch.Tensor, batch_size: int) -> torch.Tensor:
    """
    Cut a 1-D id stream into ``batch_size`` contiguous columns.

    Returns [steps, batch_size]; the tail that doesn't fill a full row is dropped.
    """
    steps = ids.numel() // batch_size
    if steps == 0:
        raise ValueError(
            f"Not enough tokens ({ids.numel()}) for batch_size={batch_size}"
        )
    return ids[: steps * batch_size].view(batch_size, steps).t().contiguous()


class SequenceLoader:
    """
    Iterates a batchified stream [steps, B] in BPTT windows.

    ``targets`` are the ``inputs`` shifted by one time step. The read position is
    kept between calls to ``subiter``, so an epoch shorter than the split resumes
    where the previous one stopped and wraps around at the end.
    """

    def __init__(self, data: torch.Tensor):
        if data.dim() != 2 or data.size(0) < 2:
            raise ValueError(f"Expected [steps >= 2, batch] ids, got {tuple(data.shape)}")
        self.data = data
        self._cursor = 0

    @property
    def size(self) -> int:
        """Number of time steps that have a next-token target."""
        return self.data.size(0) - 1

    @property
    def batch_size(self) -> int:
        return self.data.size(1)

    def subiter(
        self, seq_len: int, epoch_size: int = -1
    ) -> Iterator[tuple[int, torch.Tensor, torch.Tensor]]:
        """Yield ``(steps_consumed, inputs [T, B], targets [T, B])``."""
        if epoch_size < 0:
            epoch_size = self.size

        consumed = 0
        while consumed < epoch_size:
            if self._cursor >= self.size:
                self._cursor = 0

            start = self._cursor
            length = min(seq_len, self.size - start, epoch_size - consumed)

            inputs = self.data[start : start + length]
            targets = self.data[start + 1 : start + 1 + length]

            self._cursor += length
            consumed += length

            yield consumed, inputs, targets

    def reset(self) -> None:
        self._cursor = 0
