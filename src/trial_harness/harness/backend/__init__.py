"""Trial runner implementations."""

from trial_harness.harness.backend.base import TrialRequest, TrialRunner
from trial_harness.harness.backend.command_runner import CommandTrialRunner

__all__ = [
    "CommandTrialRunner",
    "TrialRequest",
    "TrialRunner",
]
