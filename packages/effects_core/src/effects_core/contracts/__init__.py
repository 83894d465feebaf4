"""Contracts - events, rules and run records for the dispatch engine."""

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule, RetryPolicy, TargetResolutionRule
from effects_core.contracts.runs import EffectDeadLetter, EffectRun, OutboxEntry
from effects_core.contracts.types import (
    EffectRunStatus,
    ExecutionMode,
    FailureHandling,
    OutboxStatus,
    SkipReason,
    TargetKind,
)

__all__ = [
    "SystemEvent",
    "EffectRule",
    "RetryPolicy",
    "TargetResolutionRule",
    "EffectRun",
    "EffectDeadLetter",
    "OutboxEntry",
    "EffectRunStatus",
    "ExecutionMode",
    "FailureHandling",
    "OutboxStatus",
    "SkipReason",
    "TargetKind",
]
