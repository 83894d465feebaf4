"""
Effect engine persistence.

The engine depends only on the EffectRepository contract:
- SqlEffectRepository: SQLAlchemy session backed (production)
- InMemoryEffectRepository: dict backed (development and tests)
"""

from effects_core.persistence.memory import InMemoryEffectRepository
from effects_core.persistence.models import EffectsBase
from effects_core.persistence.repo import EffectRepository
from effects_core.persistence.sql import SqlEffectRepository

__all__ = [
    "EffectRepository",
    "EffectsBase",
    "InMemoryEffectRepository",
    "SqlEffectRepository",
]
