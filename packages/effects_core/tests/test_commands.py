"""
Tests for the command surface.
"""

from uuid import uuid4

import pytest

from effects_core.commands import CommandProcessor


class TestCommandProcessor:
    """Tests for CommandProcessor.handle."""

    @pytest.fixture
    def processor(self, runner):
        return CommandProcessor(runner, batch_size=5, retry_limit=7)

    def test_unknown_action(self, processor):
        assert processor.handle({"action": "explode"}) == (400, {"error": "Unknown action"})

    def test_missing_action(self, processor):
        status, _ = processor.handle({})
        assert status == 400

    def test_process_single(self, processor, registry, make_handler, repo, make_event):
        registry.register("notification.in_app", make_handler())
        repo.add_rule("x.happened", "notification.in_app")
        event = make_event("x.happened")

        status, body = processor.handle({"action": "process_single", "event_id": str(event.id)})

        assert status == 200
        assert body["eventId"] == str(event.id)
        assert body["effectsProcessed"] == 1
        assert body["completed"] == 1

    def test_process_single_unknown_event(self, processor):
        event_id = uuid4()

        status, body = processor.handle({"action": "process_single", "event_id": str(event_id)})

        assert status == 404
        assert body == {"success": False, "error": "Event not found", "eventId": str(event_id)}

    def test_process_single_requires_event_id(self, processor):
        status, body = processor.handle({"action": "process_single"})

        assert status == 422
        assert body["details"][0]["loc"] == ["event_id"]

    def test_invalid_event_id(self, processor):
        status, body = processor.handle({"action": "process_single", "event_id": "not-a-uuid"})

        assert status == 422
        assert body["error"] == "Invalid request"

    def test_invalid_batch_size(self, processor):
        status, _ = processor.handle({"action": "process_batch", "batch_size": 0})
        assert status == 422

    def test_process_batch_uses_default_size(self, processor, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(runner, "process_batch", lambda limit: seen.append(limit) or [])

        status, body = processor.handle({"action": "process_batch"})

        assert status == 200
        assert body == {"success": True, "processed": 0, "results": []}
        assert seen == [5]

    def test_process_batch(self, processor, make_event):
        make_event("x.happened")
        make_event("x.happened")

        status, body = processor.handle({"action": "process_batch", "batch_size": 1})

        assert status == 200
        assert body["processed"] == 1

    def test_retry_failed(self, processor, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(runner, "retry_failed_effects", lambda limit: seen.append(limit) or [])

        status, body = processor.handle({"action": "retry_failed", "limit": 3})

        assert status == 200
        assert body == {"success": True, "retried": 0, "results": []}
        assert seen == [3]

    def test_recover_stale(self, processor, runner, monkeypatch):
        seen = []
        monkeypatch.setattr(
            runner,
            "recover_stale_runs",
            lambda stale_after, limit: seen.append((stale_after.total_seconds(), limit)) or [],
        )

        status, body = processor.handle({"action": "recover_stale", "stale_after_seconds": 60})

        assert status == 200
        assert body["recovered"] == 0
        assert seen == [(60.0, 7)]

    def test_unexpected_error_is_500(self, processor, runner, monkeypatch):
        def broken(limit):
            raise RuntimeError("database down")

        monkeypatch.setattr(runner, "process_batch", broken)

        assert processor.handle({"action": "process_batch"}) == (500, {"error": "database down"})
