from pathlib import Path

BUILD_DIR = Path("build")
DATASET_CACHE_DIR = BUILD_DIR / "datasets"

# Experiment logs (hyperparameters, vocabulary and best model) go here by default
DEFAULT_SAVE_PATH = BUILD_DIR / "rnnlm"
