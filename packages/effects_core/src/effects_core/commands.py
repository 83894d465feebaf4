"""
Command surface of the dispatch engine.

Transport independent: a command is a JSON object with an "action" and
its arguments, and the answer is (status_code, body). The HTTP app and
the CLI both go through CommandProcessor.

Actions:
- process_single {event_id}
- process_batch {batch_size}
- retry_failed {limit}
- recover_stale {stale_after_seconds, limit}
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from effects_core.errors import EventNotFoundError
from effects_core.runner import BatchRunner

logger = logging.getLogger(__name__)

ACTIONS = ("process_single", "process_batch", "retry_failed", "recover_stale")


class CommandRequest(BaseModel):
    """Arguments of a command. Only the ones an action uses are read."""

    model_config = ConfigDict(extra="ignore")

    action: str
    event_id: UUID | None = None
    batch_size: int | None = Field(default=None, ge=1, le=1000)
    limit: int | None = Field(default=None, ge=1, le=1000)
    stale_after_seconds: int | None = Field(default=None, ge=1)


class CommandProcessor:
    """
    Executes commands against a batch runner.

    Args:
        runner: Batch runner (wraps the dispatch engine)
        batch_size: Default outbox batch size
        retry_limit: Default number of runs per retry or recovery sweep
        stale_after: Default staleness threshold for recover_stale
    """

    def __init__(
        self,
        runner: BatchRunner,
        batch_size: int = 10,
        retry_limit: int = 20,
        stale_after: timedelta = timedelta(minutes=15),
    ):
        self.runner = runner
        self.batch_size = batch_size
        self.retry_limit = retry_limit
        self.stale_after = stale_after

    def handle(self, request: dict[str, Any] | CommandRequest) -> tuple[int, dict[str, Any]]:
        """
        Execute one command.

        Returns:
            (status_code, body): 200 on success, 400 unknown action,
            404 unknown event, 422 invalid arguments, 500 anything else
        """
        action = request.action if isinstance(request, CommandRequest) else request.get("action")
        if action not in ACTIONS:
            logger.warning(f"Unknown action: {action}")
            return 400, {"error": "Unknown action"}

        try:
            command = CommandRequest.model_validate(request)
        except ValidationError as e:
            return 422, {
                "error": "Invalid request",
                "details": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
            }

        if command.action == "process_single" and command.event_id is None:
            return 422, {"error": "Invalid request", "details": [{"loc": ["event_id"], "msg": "Field required"}]}

        logger.info(
            f"Action: {command.action}, EventID: {command.event_id or 'batch'}",
            extra={"action": command.action},
        )

        try:
            return 200, self._dispatch(command)
        except EventNotFoundError as e:
            logger.error(str(e), extra={"event_id": str(e.event_id)})
            return 404, {"success": False, "error": "Event not found", "eventId": str(e.event_id)}
        except Exception as e:
            logger.error(f"Command {command.action} failed: {e}", exc_info=True)
            return 500, {"error": str(e) or e.__class__.__name__}

    def _dispatch(self, command: CommandRequest) -> dict[str, Any]:
        if command.action == "process_single":
            return self.runner.engine.process_event(command.event_id).to_dict()

        if command.action == "process_batch":
            results = self.runner.process_batch(command.batch_size or self.batch_size)
            return {"success": True, "processed": len(results), "results": results}

        if command.action == "retry_failed":
            results = self.runner.retry_failed_effects(command.limit or self.retry_limit)
            return {"success": True, "retried": len(results), "results": results}

        stale_after = (
            timedelta(seconds=command.stale_after_seconds)
            if command.stale_after_seconds
            else self.stale_after
        )
        results = self.runner.recover_stale_runs(stale_after, command.limit or self.retry_limit)
        return {"success": True, "recovered": len(results), "results": results}

