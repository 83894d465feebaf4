"""
Effect handlers - the code that performs each effect type.
"""

from effects_core.handlers.base import EffectContext, EffectHandler, EffectResult
from effects_core.handlers.builtin import build_default_registry
from effects_core.handlers.registry import HandlerRegistry

__all__ = [
    "EffectContext",
    "EffectHandler",
    "EffectResult",
    "HandlerRegistry",
    "build_default_registry",
]
