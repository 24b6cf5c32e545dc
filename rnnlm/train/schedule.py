from typing import Mapping, Optional


class LearningRateSchedule:
    """
    Per-epoch learning rate.

    After each epoch, the rate for the next epoch is taken from ``schedule`` when
    it has an entry for that epoch. Otherwise the rate decreases linearly so that
    it would reach ``min_lr`` after ``saturate`` epochs. An entry for epoch 1
    replaces ``start_lr``. The rate never goes below ``min_lr``.
    """

    def __init__(
        self,
        *,
        start_lr: float,
        min_lr: float,
        saturate: int,
        schedule: Optional[Mapping[int, float]] = None,
    ):
        assert saturate > 0

        self.start_lr = start_lr
        self.min_lr = min_lr
        self.saturate = saturate
        self.schedule = dict(schedule) if schedule else {}

        # エポック 1 のエントリがあれば start_lr より優先する
        self.lr = max(self.min_lr, self.schedule.get(1, self.start_lr))

    @property
    def decay_per_epoch(self) -> float:
        return (self.start_lr - self.min_lr) / self.saturate

    def step(self, next_epoch: int) -> float:
        """Update and return the rate to use in ``next_epoch`` (1-based)."""
        if next_epoch in self.schedule:
            lr = self.schedule[next_epoch]
        else:
            lr = self.lr - self.decay_per_epoch

        self.lr = max(self.min_lr, lr)
        return self.lr
