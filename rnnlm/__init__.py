"""Recurrent neural-network language model training harness."""

__version__ = "0.1.0"
