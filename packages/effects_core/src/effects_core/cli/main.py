"""
Effects CLI

Command-line interface for operating the effect dispatch engine.

Commands:
- process-event: Dispatch one event now
- process-batch: Drain pending outbox entries
- retry-failed: Run the retry sweep
- recover-stale: Fail runs stuck in running
- dead-letters: List dead letters (database or alert stream)
- handlers: List registered effect types
- create-tables: Create the engine tables
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from basecore.logging import setup_logging
from effects_core.handlers.builtin import build_default_registry
from effects_core.persistence.repo import EffectRepository

app = typer.Typer(
    name="effects-cli",
    help="Event Effect Dispatch Engine CLI",
)

console = Console()

_STATUS_STYLES = {
    "completed": "green",
    "skipped": "yellow",
    "retry_scheduled": "magenta",
    "failed": "red",
}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Log level for engine output"),
):
    setup_logging(level=log_level)


@contextmanager
def repository_session() -> Iterator[EffectRepository]:
    """SQL repository over a fresh database session."""
    from basecore.db import session_scope
    from effects_core.service import build_repository

    with session_scope() as db:
        yield build_repository(db)


def run_command(request: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    from effects_core.service import build_processor

    with repository_session() as repo:
        return build_processor(repo).handle(request)


def _outcome_rows(results: list[dict[str, Any]]) -> Iterator[tuple[str, dict[str, Any]]]:
    for item in results:
        if "results" in item:
            # Per-event report
            for outcome in item["results"]:
                yield item["eventId"], outcome
        else:
            yield item.get("eventId", ""), item


def print_results(title: str, results: list[dict[str, Any]]) -> None:
    table = Table(title=title)
    table.add_column("Event", style="dim")
    table.add_column("Effect")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")

    for event_id, outcome in _outcome_rows(results):
        status = outcome.get("status") or ("completed" if outcome.get("success") else "failed")
        style = _STATUS_STYLES.get(status, "white")
        table.add_row(
            event_id,
            outcome.get("effectType", "-"),
            f"[{style}]{status}[/{style}]",
            str(outcome.get("attempts", "")),
            outcome.get("reason") or outcome.get("error") or "",
        )

    console.print(table)


def _finish(status_code: int, body: dict[str, Any], title: str, key: str) -> None:
    if status_code != 200:
        rprint(f"[red]Error ({status_code}): {body.get('error')}[/red]")
        raise typer.Exit(1)
    print_results(title, body.get("results", []))
    rprint(f"[green]{key}: {body.get(key)}[/green]")


@app.command()
def process_event(
    event_id: str = typer.Argument(..., help="System event UUID"),
):
    """Dispatch every active effect of one event."""
    try:
        UUID(event_id)
    except ValueError:
        rprint(f"[red]Invalid event ID: {event_id}[/red]")
        raise typer.Exit(1)

    status_code, body = run_command({"action": "process_single", "event_id": event_id})
    _finish(status_code, body, f"Event {event_id}", "effectsProcessed")


@app.command()
def process_batch(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-n", help="Max outbox entries"),
):
    """Process pending outbox entries, oldest first."""
    request: dict[str, Any] = {"action": "process_batch"}
    if batch_size is not None:
        request["batch_size"] = batch_size
    status_code, body = run_command(request)
    _finish(status_code, body, "Outbox batch", "processed")


@app.command()
def retry_failed(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Max runs to retry"),
):
    """Re-run effects whose retry time has passed."""
    request: dict[str, Any] = {"action": "retry_failed"}
    if limit is not None:
        request["limit"] = limit
    status_code, body = run_command(request)
    _finish(status_code, body, "Retry sweep", "retried")


@app.command()
def recover_stale(
    stale_after_seconds: Optional[int] = typer.Option(None, help="Age of a running run to count as stale"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Max runs to recover"),
):
    """Fail runs left in running by a crashed worker."""
    request: dict[str, Any] = {"action": "recover_stale"}
    if stale_after_seconds is not None:
        request["stale_after_seconds"] = stale_after_seconds
    if limit is not None:
        request["limit"] = limit
    status_code, body = run_command(request)
    _finish(status_code, body, "Stale run recovery", "recovered")


@app.command()
def dead_letters(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
    tenant_id: Optional[str] = typer.Option(None, help="Filter by tenant UUID"),
    stream: bool = typer.Option(False, "--stream", help="Read the Redis alert stream instead"),
):
    """List the most recent dead letters."""
    if stream:
        _print_stream_dead_letters(limit)
        return

    tenant_uuid = None
    if tenant_id:
        try:
            tenant_uuid = UUID(tenant_id)
        except ValueError:
            rprint(f"[red]Invalid tenant ID: {tenant_id}[/red]")
            raise typer.Exit(1)

    with repository_session() as repo:
        letters = repo.list_dead_letters(limit=limit, tenant_id=tenant_uuid)

    if not letters:
        rprint("[green]No dead letters[/green]")
        return

    table = Table(title="Dead letters")
    table.add_column("Created")
    table.add_column("Event", style="dim")
    table.add_column("Effect")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")

    for letter in letters:
        table.add_row(
            letter.created_at.isoformat() if letter.created_at else "",
            str(letter.event_id),
            letter.effect_type,
            str(letter.attempts),
            letter.message,
        )

    console.print(table)


def _print_stream_dead_letters(limit: int) -> None:
    from basecore.redis import get_redis_client
    from basecore.settings import get_settings
    from effects_core.alerts import RedisDeadLetterPublisher

    settings = get_settings()
    publisher = RedisDeadLetterPublisher(get_redis_client(), stream_name=settings.EFFECTS_DLQ_STREAM)
    entries = publisher.recent(count=limit)

    if not entries:
        rprint(f"[green]Stream {settings.EFFECTS_DLQ_STREAM} is empty[/green]")
        return

    table = Table(title=f"Dead letters ({settings.EFFECTS_DLQ_STREAM})")
    table.add_column("Message ID", style="dim")
    table.add_column("Event")
    table.add_column("Effect")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")

    for entry in entries:
        table.add_row(
            entry["stream_msg_id"],
            entry.get("event_id", ""),
            entry.get("effect_type", ""),
            entry.get("attempts", ""),
            entry.get("message", ""),
        )

    console.print(table)


@app.command()
def handlers():
    """List registered effect types and their legacy aliases."""
    registry = build_default_registry()

    table = Table(title="Effect handlers")
    table.add_column("Effect type")
    table.add_column("Aliases", style="dim")

    aliases_by_type: dict[str, list[str]] = {}
    for alias, effect_type in registry.aliases().items():
        aliases_by_type.setdefault(effect_type, []).append(alias)

    for effect_type in registry.effect_types():
        table.add_row(effect_type, ", ".join(sorted(aliases_by_type.get(effect_type, []))))

    console.print(table)


@app.command()
def create_tables():
    """Create the effect engine tables in DATABASE_URL."""
    from basecore.db import get_engine
    from effects_core.service import create_tables as _create_tables

    _create_tables(get_engine())
    rprint("[green]Effect engine tables created[/green]")


if __name__ == "__main__":
    app()
