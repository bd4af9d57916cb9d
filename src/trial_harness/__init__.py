"""Resumable multi-model benchmark trial harness."""

__version__ = "0.1.0"
