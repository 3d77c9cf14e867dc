"""Stage-based import pipeline for tabular event data."""

__version__ = "0.1.0"
