"""Training utilities and session helpers."""

from .base import TrainingOptions
from .experiment import ExperimentLog
from .trainer import BaseTrainer, TrainerState, TrainingDivergedError

__all__ = [
    "BaseTrainer",
    "ExperimentLog",
    "TrainerState",
    "TrainingDivergedError",
    "TrainingOptions",
]
