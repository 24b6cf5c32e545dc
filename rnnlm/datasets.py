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

"""Configuration helpers for dataset loading."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class DatasetConfig:
    path: str
    content_column: str
    train_split: str
    validation_split: str
    test_split: str
    name: Optional[str] = None
    trust_remote_code: bool = False


DATASETS: dict[str, DatasetConfig] = {
    # Mikolov's pre-processed PennTreeBank (10k vocabulary, <unk> already applied)
    "ptb": DatasetConfig(
        path="ptb-text-only/ptb_text_only",
        content_column="sentence",
        train_split="train",
        validation_split="validation",
        test_split="test",
        trust_remote_code=True,
    ),
    # NOTE: "-v1" is the tokenized variant with <unk>; the "-raw-" one is not
    "wikitext2": DatasetConfig(
        path="Salesforce/wikitext",
        name="wikitext-2-v1",
        content_column="text",
        train_split="train",
        validation_split="validation",
        test_split="test",
    ),
}


def get_dataset_config(name: str) -> DatasetConfig:
    try:
        return DATASETS[name]
    except KeyError:
        raise ValueError(
            f"Unknown dataset: {name!r} (available: {', '.join(sorted(DATASETS))})"
        ) from None
