"""
Data models for the Viral Consensus Pipeline.
"""

from .stages import (
    ReadMode,
    Sample,
    ReferenceSet,
    RetryPolicy,
    OutputSlot,
    InputBinding,
    PublishRule,
    StageSpec,
    TaskStatus,
    TaskInstance,
)
from .results import (
    ChainStatus,
    ChainResult,
    RunSummary,
    TrimSummary,
)

__all__ = [
    "ReadMode",
    "Sample",
    "ReferenceSet",
    "RetryPolicy",
    "OutputSlot",
    "InputBinding",
    "PublishRule",
    "StageSpec",
    "TaskStatus",
    "TaskInstance",
    "ChainStatus",
    "ChainResult",
    "RunSummary",
    "TrimSummary",
]
