"""
Built-in effect handlers.

Most effect types are acknowledged and logged here; the concrete business
work (sending emails, creating tasks, ...) belongs to the applications that
register their own handlers over these. integration.webhook performs a
real HTTP call.
"""

import logging
from typing import Any

import httpx

from effects_core.handlers.base import EffectContext, EffectHandler, EffectResult
from effects_core.handlers.registry import HandlerRegistry

logger = logging.getLogger(__name__)

WEBHOOK_EFFECT = "integration.webhook"

# Effect types acknowledged by the logging handler
ACKNOWLEDGED_EFFECTS = (
    "notification.in_app",
    "notification.email",
    "notification.push",
    "notification.sms",
    "task.create",
    "task.assign",
    "task.update",
    "task.complete",
    "workflow.trigger",
    "workflow.escalate",
    "workflow.advance",
    "workflow.complete",
    "ui.badge_update",
    "ui.live_update",
    "ui.list_refresh",
    "ui.toast_show",
    "ui.calendar_update",
    "ui.progress_update",
    "cache.invalidate",
    "cache.refresh",
    "compliance.audit_log",
    "compliance.alert",
    "compliance.retention_tag",
    "integration.calendar_sync",
    "integration.payroll_update",
    "integration.accounting_export",
    "access.permission_update",
    "access.role_change",
    "access.revoke",
    "ai.analysis",
    "ai.prediction",
    "ai.suggestion",
    "analytics.metric_increment",
    "analytics.report_update",
    "analytics.kpi_refresh",
)

# Old effect type names still found in impact matrices
LEGACY_ALIASES = {
    "report.refresh": "analytics.report_update",
    "calendar.sync": "integration.calendar_sync",
    "audit.log": "compliance.audit_log",
    "access.update": "access.permission_update",
    "ai.analyze": "ai.analysis",
    "integration.sync": WEBHOOK_EFFECT,
}


class AcknowledgeHandler(EffectHandler):
    """Logs the effect and reports it as done."""

    def __init__(self, effect_type: str):
        self.effect_type = effect_type

    def execute(self, context: EffectContext) -> EffectResult:
        logger.info(
            f"[{self.effect_type}] {context.event.event_name} for {len(context.targets)} targets",
            extra={
                "event_id": str(context.event.id),
                "tenant_id": str(context.event.tenant_id),
                "effect_type": self.effect_type,
                "targets": context.targets,
            },
        )
        return EffectResult.ok({"acknowledged": True, "targets": len(context.targets)})


class WebhookEffectHandler(EffectHandler):
    """
    POSTs the event to the tenant's webhook.

    The URL comes from the tenant's effect settings (webhook_url). Tenants
    without one are acknowledged without a call.
    """

    def __init__(self, timeout: float = 10.0, client: httpx.Client | None = None):
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    def execute(self, context: EffectContext) -> EffectResult:
        url = context.settings.get("webhook_url")
        if not url:
            logger.debug(f"No webhook_url configured for tenant {context.event.tenant_id}")
            return EffectResult.ok({"called": False})

        event = context.event
        body: dict[str, Any] = {
            "event": event.event_name,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "payload": event.payload,
            "occurred_at": event.occurred_at.isoformat(),
        }

        try:
            response = self._get_client().post(url, json=body)
        except httpx.RequestError as e:
            logger.error(
                f"Webhook call failed: {e}",
                extra={"event_id": str(event.id), "url": url},
            )
            return EffectResult.fail(f"Webhook call failed: {e}")

        if response.status_code >= 400:
            return EffectResult.fail(
                f"Webhook returned HTTP {response.status_code}",
                data={"status_code": response.status_code},
            )

        return EffectResult.ok({"called": True, "status_code": response.status_code})


def build_default_registry(webhook_timeout: float = 10.0) -> HandlerRegistry:
    """Registry with every built-in effect type and the legacy aliases."""
    registry = HandlerRegistry()
    for effect_type in ACKNOWLEDGED_EFFECTS:
        registry.register(effect_type, AcknowledgeHandler(effect_type))
    registry.register(WEBHOOK_EFFECT, WebhookEffectHandler(timeout=webhook_timeout))

    for legacy, canonical in LEGACY_ALIASES.items():
        registry.alias(legacy, canonical)

    return registry
