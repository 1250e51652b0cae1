"""Multi-provider mail sync, dedup and incremental learning engine."""

__version__ = "0.1.0"
