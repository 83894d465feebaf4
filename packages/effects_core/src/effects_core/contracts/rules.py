"""
Impact matrix rules.

An EffectRule maps an event name to one effect type, with the audience
(target resolution rule), gating conditions and failure policy for that
effect. Rows are validated when loaded so malformed configuration is
rejected before dispatch.
"""

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from effects_core.contracts.types import ExecutionMode, FailureHandling
from effects_core.errors import RuleConfigurationError

logger = logging.getLogger(__name__)

# Keys understood by effects_core.conditions
KNOWN_CONDITION_KEYS = frozenset({"payload_has", "status_is", "has_assigned_user"})


class RetryPolicy(BaseModel):
    """How often and how fast a failing effect is retried."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    backoff: Literal["exponential", "linear", "fixed"] = "exponential"
    base_delay_seconds: float = Field(default=60.0, ge=0)


# --- Target resolution rules (one variant per resolver kind) ---


class _TargetRule(BaseModel):
    # Rules may carry handler configuration next to the audience
    # (task_config, workflow_config, ...), so unknown keys are kept.
    model_config = ConfigDict(extra="allow", frozen=True)


class AssignedUserTarget(_TargetRule):
    type: Literal["assigned_user"]


class ActorTarget(_TargetRule):
    type: Literal["actor"]


class RoleTarget(_TargetRule):
    type: Literal["role"]
    role_name: str


class TeamTarget(_TargetRule):
    type: Literal["team"]
    team_id: str | None = None


class ManagerTarget(_TargetRule):
    type: Literal["manager"]


class DepartmentAdminsTarget(_TargetRule):
    type: Literal["department_admins"]
    department: str | None = None
    roles: tuple[str, ...] = ("admin", "hr", "manager")


class EntityOwnerTarget(_TargetRule):
    type: Literal["entity_owner"]


class SubscribersTarget(_TargetRule):
    type: Literal["subscribers"]


TargetResolutionRule = Annotated[
    Union[
        AssignedUserTarget,
        ActorTarget,
        RoleTarget,
        TeamTarget,
        ManagerTarget,
        DepartmentAdminsTarget,
        EntityOwnerTarget,
        SubscribersTarget,
    ],
    Field(discriminator="type"),
]

_target_rule_adapter = TypeAdapter(TargetResolutionRule)


def parse_target_rule(data: dict[str, Any]) -> TargetResolutionRule:
    """Validate a raw target_resolution_rule document."""
    return _target_rule_adapter.validate_python(data)


class EffectRule(BaseModel):
    """One row of the impact matrix."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str | None = None
    event_name: str
    effect_type: str
    effect_category: str | None = None
    target_resolution_rule: TargetResolutionRule | None = None
    conditions: dict[str, Any] | None = None
    priority: str = "normal"
    execution_mode: ExecutionMode = ExecutionMode.SYNC
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    failure_handling: str = FailureHandling.RETRY.value
    is_active: bool = True

    @field_validator("target_resolution_rule", mode="before")
    @classmethod
    def _empty_target_rule(cls, value: Any) -> Any:
        # The matrix stores "{}" for effects without an audience
        if value in ({}, None):
            return None
        return value

    @field_validator("retry_policy", mode="before")
    @classmethod
    def _default_retry_policy(cls, value: Any) -> Any:
        return value or {}

    @field_validator("execution_mode", mode="before")
    @classmethod
    def _default_execution_mode(cls, value: Any) -> Any:
        return value or ExecutionMode.SYNC.value

    @field_validator("conditions")
    @classmethod
    def _warn_unknown_conditions(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        # Unknown keys are kept so evaluation fails closed on them
        if value:
            unknown = set(value) - KNOWN_CONDITION_KEYS
            if unknown:
                logger.warning(
                    f"Rule has unknown condition keys: {sorted(unknown)}",
                    extra={"unknown_keys": sorted(unknown)},
                )
        return value

    @property
    def target_type(self) -> str:
        """Name of the audience strategy, recorded on effect runs."""
        if self.target_resolution_rule is None:
            return "none"
        return self.target_resolution_rule.type

    @property
    def retries_enabled(self) -> bool:
        return self.failure_handling == FailureHandling.RETRY.value

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EffectRule":
        """
        Build a rule from an impact_matrix row.

        Raises:
            RuleConfigurationError: if the row does not validate
        """
        data = dict(row)
        if "event_name" not in data and "action_name" in data:
            data["event_name"] = data["action_name"]
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RuleConfigurationError(
                f"Invalid impact matrix row for {data.get('event_name')}/{data.get('effect_type')}: {e}",
                details={"rule_id": data.get("id"), "errors": e.errors(include_url=False)},
            ) from e

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy stored on the effect run."""
        return self.model_dump(mode="json")
