"""Orchestration of short-lived traffic and failure-injection experiments."""

from .manager import ExperimentManager
from .models import (
    ErrorKind,
    ExperimentKind,
    ExperimentRecord,
    ExperimentStatus,
    LaunchResult,
    OutcomeStatus,
    StopResult,
)
from .registry import JobRegistry

__all__ = [
    "ErrorKind",
    "ExperimentKind",
    "ExperimentManager",
    "ExperimentRecord",
    "ExperimentStatus",
    "JobRegistry",
    "LaunchResult",
    "OutcomeStatus",
    "StopResult",
]
