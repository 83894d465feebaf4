"""
Effects API

HTTP binding of the effect dispatch engine's command surface.

Producers (or a scheduler) POST a command:
    {"action": "process_single", "event_id": "..."}
    {"action": "process_batch", "batch_size": 10}
    {"action": "retry_failed"}
    {"action": "recover_stale", "stale_after_seconds": 900}

The response body and status code come straight from CommandProcessor.
"""

import functools
import logging
from typing import Any

from fastapi import Body, Depends, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from basecore.db import get_db
from basecore.logging import setup_logging
from effects_core.commands import CommandProcessor
from effects_core.handlers.builtin import build_default_registry
from effects_core.handlers.registry import HandlerRegistry
from effects_core.persistence.repo import EffectRepository
from effects_core.service import build_processor, build_repository

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Effects API",
    description="Dispatches system events to their effects",
    version="1.0.0",
)


@functools.lru_cache()
def get_registry() -> HandlerRegistry:
    """Handler registry (built once per process)."""
    return build_default_registry()


def get_repository(db: Session = Depends(get_db)) -> EffectRepository:
    return build_repository(db)


def get_processor(repo: EffectRepository = Depends(get_repository)) -> CommandProcessor:
    return build_processor(repo, registry=get_registry())


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "effects-api"}


@app.post("/events/process")
def process_command(
    command: dict[str, Any] = Body(...),
    processor: CommandProcessor = Depends(get_processor),
):
    """
    Execute one engine command.

    Returns:
        200 with the command result, 400 for an unknown action, 404 for an
        unknown event, 422 for invalid arguments, 500 on engine failure
    """
    status_code, body = processor.handle(command)
    return JSONResponse(content=jsonable_encoder(body), status_code=status_code)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
