"""Scheduling utilities for recurring rewards maintenance."""

from .config import JobDefinition, RetryPolicy, load_job_definitions
from .runner import RewardsJobScheduler

__all__ = ["JobDefinition", "RetryPolicy", "RewardsJobScheduler", "load_job_definitions"]
