"""Celery task modules for SmartPick."""

# Import submodules so Celery autodiscovery registers tasks.
from . import expiration_sweep as _expiration_sweep  # noqa: F401

__all__ = ["_expiration_sweep"]
