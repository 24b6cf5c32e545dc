import json
import math
import os

import pytest

from rnnlm.train.base import TrainingOptions
from rnnlm.train.experiment import ExperimentLog
from rnnlm.train.trainer import (
    BaseTrainer,
    TrainerState,
    TrainingDivergedError,
    perplexity,
)


class ScriptedTrainer(BaseTrainer):
    """Trainer whose validation perplexities are given up front."""

    def __init__(self, options: TrainingOptions, valid_ppls: list[float]):
        super().__init__(options)
        self.valid_ppls = list(valid_ppls)
        self.batch_nlls = [0.5, 1.5]
        self.saved_epochs: list[int] = []
        self.learning_rates: list[float] = []
        self.epochs_started = 0
        self._lr = 0.0

    def manual_seed(self, seed: int) -> None:
        pass

    @property
    def device_type(self) -> str:
        return "cpu"

    @property
    def num_parameters(self) -> int:
        return 0

    def on_train_initialize(self) -> None:
        pass

    def create_experiment_log(self) -> ExperimentLog:
        return ExperimentLog(
            options=self.options.to_dict(),
            dataset=self.options.dataset,
            vocab=["<eos>", "<unk>"],
            model_config={},
            criterion={},
        )

    def on_epoch_start(self) -> None:
        self.epochs_started += 1

    def batch_train_iter(self):
        for i, nll in enumerate(self.batch_nlls):
            yield i + 1, nll

    def train_step(self, batch):
        # 4 tokens per batch, each with NLL = batch
        return batch * 4, 4

    def evaluate(self) -> float:
        return self.valid_ppls.pop(0)

    @property
    def learning_rate(self) -> float:
        return self._lr

    def set_learning_rate(self, lr: float) -> None:
        self._lr = lr
        self.learning_rates.append(lr)

    def synchronize_device(self) -> None:
        pass

    def snapshot_model(self, log: ExperimentLog) -> None:
        log.model_state = {}

    def save_experiment(self) -> None:
        super().save_experiment()
        assert self.log is not None
        self.saved_epochs.append(self.log.epoch)


def _make_options(tmp_path, **kwargs) -> TrainingOptions:
    defaults = dict(
        save_path=str(tmp_path),
        id="test",
        dataset="dummy",
        silent=True,
        seed=None,
    )
    defaults.update(kwargs)
    return TrainingOptions(**defaults)


def test_early_stop_after_one_bad_epoch(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=2, early_stop=1), [50.0, 60.0]
    )

    log = trainer.run()

    assert trainer.state is TrainerState.EARLY_STOPPED
    assert log.min_valid_ppl == 50.0
    assert log.epoch == 1
    assert trainer.saved_epochs == [1]
    assert os.path.exists(os.path.join(tmp_path, "test.pt"))


def test_done_when_max_epoch_reached(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=3, early_stop=10), [50.0, 40.0, 30.0]
    )

    log = trainer.run()

    assert trainer.state is TrainerState.DONE
    assert trainer.state.is_terminal
    assert trainer.epochs_started == 3
    assert trainer.saved_epochs == [1, 2, 3]
    assert log.valid_ppl == [50.0, 40.0, 30.0]


def test_early_stop_triggers_exactly_at_patience(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=0, early_stop=3),
        [10.0, 11.0, 12.0, 13.0, 1.0],
    )

    log = trainer.run()

    assert trainer.state is TrainerState.EARLY_STOPPED
    assert len(log.valid_ppl) == 4
    assert trainer.saved_epochs == [1]


def test_improvement_resets_patience(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=6, early_stop=3),
        [10.0, 11.0, 12.0, 9.0, 9.5, 9.9],
    )

    log = trainer.run()

    # エポック 4 で改善したので、パターン切れにならずに最後まで回る
    assert trainer.state is TrainerState.DONE
    assert trainer.saved_epochs == [1, 4]
    assert log.epoch == 4


def test_equal_perplexity_is_not_an_improvement(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=5, early_stop=1), [10.0, 10.0]
    )

    trainer.run()

    assert trainer.state is TrainerState.EARLY_STOPPED
    assert trainer.saved_epochs == [1]


def test_training_perplexity_is_exp_of_mean_token_nll(tmp_path):
    trainer = ScriptedTrainer(_make_options(tmp_path, max_epoch=1), [5.0])

    log = trainer.run()

    # (0.5 * 4 + 1.5 * 4) / 8 tokens = 1.0
    assert log.train_ppl == [pytest.approx(math.e)]


def test_learning_rate_never_below_min_lr(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(
            tmp_path,
            max_epoch=6,
            early_stop=100,
            start_lr=1.0,
            min_lr=0.3,
            saturate=2,
            schedule={3: 0.1, 5: 2.0},
        ),
        [6.0, 5.0, 4.0, 3.0, 2.0, 1.0],
    )

    trainer.run()

    assert trainer.learning_rates[0] == 1.0
    assert all(lr >= 0.3 for lr in trainer.learning_rates)
    # lr for epoch 5 comes from the schedule
    assert trainer.learning_rates[4] == 2.0


def test_diverged_loss_aborts_without_checkpoint(tmp_path):
    trainer = ScriptedTrainer(_make_options(tmp_path, max_epoch=3), [5.0, 4.0, 3.0])
    trainer.batch_nlls = [0.5, float("nan")]

    with pytest.raises(TrainingDivergedError):
        trainer.run()

    assert trainer.saved_epochs == []
    assert not os.path.exists(os.path.join(tmp_path, "test.pt"))


def test_hyperparameters_are_saved_as_json(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=1, schedule={2: 0.5}), [5.0]
    )
    trainer.run()

    with open(os.path.join(tmp_path, "test.json")) as f:
        hparams = json.load(f)

    assert hparams["options"]["id"] == "test"
    assert hparams["options"]["schedule"] == {"2": 0.5}
    assert TrainingOptions.from_dict(hparams["options"]).schedule == {2: 0.5}


def test_experiment_id_is_generated_when_missing(tmp_path):
    trainer = ScriptedTrainer(_make_options(tmp_path, id=""), [])

    assert trainer.experiment_id.startswith("dummy-")
    assert trainer.options.id == trainer.experiment_id


def test_mean_grad_norm_is_exponential_moving_average(tmp_path):
    trainer = ScriptedTrainer(_make_options(tmp_path), [])

    trainer.update_mean_grad_norm(10.0)
    assert trainer.mean_grad_norm == 10.0

    trainer.update_mean_grad_norm(0.0)
    assert trainer.mean_grad_norm == pytest.approx(9.0)


def test_perplexity():
    assert perplexity(0.0, 10) == 1.0
    assert perplexity(2.0 * 5, 5) == pytest.approx(math.exp(2.0))

    with pytest.raises(ValueError):
        perplexity(1.0, 0)


def test_schedule_entry_for_first_epoch_sets_initial_rate(tmp_path):
    trainer = ScriptedTrainer(
        _make_options(tmp_path, max_epoch=1, start_lr=1.0, schedule={1: 0.3}),
        [5.0],
    )

    trainer.run()

    assert trainer.learning_rates[0] == 0.3
