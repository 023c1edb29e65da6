"""Background workers supporting async processing."""

from .expiration_sweep import ExpirationSweepWorker

__all__ = ["ExpirationSweepWorker"]
