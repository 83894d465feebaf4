"""
Effect handler registry.

Maps effect type names to handlers. Built once at process start
(see build_default_registry) and injected into the dispatch engine.
"""

import logging
from collections.abc import Callable

from effects_core.handlers.base import EffectContext, EffectHandler, EffectResult

logger = logging.getLogger(__name__)

HandlerCallable = Callable[[EffectContext], EffectResult]


class _CallableHandler(EffectHandler):
    """Adapts a plain function to the EffectHandler interface."""

    def __init__(self, func: HandlerCallable):
        self.func = func

    def execute(self, context: EffectContext) -> EffectResult:
        return self.func(context)

    def __repr__(self) -> str:
        return f"<CallableHandler {getattr(self.func, '__name__', self.func)!r}>"


class HandlerRegistry:
    """Effect type -> handler lookup."""

    def __init__(self):
        self._handlers: dict[str, EffectHandler] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        effect_type: str,
        handler: EffectHandler | HandlerCallable,
        aliases: tuple[str, ...] = (),
    ) -> None:
        """
        Register a handler for an effect type.

        Raises:
            ValueError: if the effect type or an alias is already registered
        """
        for name in (effect_type, *aliases):
            if name in self:
                raise ValueError(f"Duplicate handler registration for {name!r}")

        if not isinstance(handler, EffectHandler):
            handler = _CallableHandler(handler)

        self._handlers[effect_type] = handler
        for alias in aliases:
            self._aliases[alias] = effect_type

        logger.debug(f"Registered effect handler {effect_type}", extra={"aliases": list(aliases)})

    def alias(self, name: str, effect_type: str) -> None:
        """Route an additional effect type name to an existing handler."""
        if name in self:
            raise ValueError(f"Duplicate handler registration for {name!r}")
        if effect_type not in self._handlers:
            raise ValueError(f"Cannot alias {name!r}: {effect_type!r} is not registered")
        self._aliases[name] = effect_type

    def get(self, effect_type: str) -> EffectHandler | None:
        """Handler for an effect type (or alias), or None."""
        canonical = self._aliases.get(effect_type, effect_type)
        return self._handlers.get(canonical)

    def __contains__(self, effect_type: str) -> bool:
        return effect_type in self._handlers or effect_type in self._aliases

    def effect_types(self) -> list[str]:
        """Registered canonical effect types, sorted."""
        return sorted(self._handlers)

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)
