"""
Status and mode vocabularies shared by the engine and its storage.

Values are the strings persisted in effect_runs / event_outbox /
impact_matrix, so they must stay stable.
"""

from enum import Enum


class EffectRunStatus(str, Enum):
    """Lifecycle of one (event, effect type) run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES

    def __str__(self) -> str:
        return self.value


TERMINAL_RUN_STATUSES = frozenset(
    {EffectRunStatus.COMPLETED, EffectRunStatus.SKIPPED, EffectRunStatus.FAILED}
)


class OutboxStatus(str, Enum):
    """Delivery state of an event_outbox row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"

    def __str__(self) -> str:
        return self.value


class ExecutionMode(str, Enum):
    """Execution hint carried by impact matrix rows."""

    SYNC = "sync"
    ASYNC = "async"

    def __str__(self) -> str:
        return self.value


class FailureHandling(str, Enum):
    """
    Known failure_handling values.

    Rules may carry other strings; anything but "retry" dead-letters on the
    first failure.
    """

    RETRY = "retry"
    IGNORE = "ignore"

    def __str__(self) -> str:
        return self.value


class TargetKind(str, Enum):
    """Audience resolution strategies."""

    ASSIGNED_USER = "assigned_user"
    ACTOR = "actor"
    ROLE = "role"
    TEAM = "team"
    MANAGER = "manager"
    DEPARTMENT_ADMINS = "department_admins"
    ENTITY_OWNER = "entity_owner"
    SUBSCRIBERS = "subscribers"

    def __str__(self) -> str:
        return self.value


class SkipReason(str, Enum):
    """Reasons reported for effects that did not invoke a handler."""

    ALREADY_PROCESSED = "already processed"
    CONDITIONS_NOT_MET = "conditions not met"
    DISABLED_BY_SETTINGS = "disabled by settings"
    NO_HANDLER = "no handler"
    IN_PROGRESS = "in progress elsewhere"
    ALREADY_FAILED = "already failed"
    ALREADY_SKIPPED = "already skipped"
    NOT_DUE = "retry not due"
    RULE_MISSING = "rule no longer active"

    def __str__(self) -> str:
        return self.value
