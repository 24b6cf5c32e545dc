import pytest

from rnnlm.datasets import DATASETS, get_dataset_config


def test_registry_entries():
    assert get_dataset_config("ptb").content_column == "sentence"
    assert get_dataset_config("wikitext2").name == "wikitext-2-v1"

    for config in DATASETS.values():
        assert config.train_split and config.validation_split and config.test_split


def test_unknown_dataset():
    with pytest.raises(ValueError, match="Unknown dataset"):
        get_dataset_config("enwik8")
