"""Celery task modules for the rewards API."""

# Import submodules so Celery autodiscovery registers tasks.
from . import payouts as _payouts  # noqa: F401

__all__ = ["_payouts"]
