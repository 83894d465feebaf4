"""
Effects Core - Event Effect Dispatch Engine

Turns recorded domain events (system_events) into concrete side effects
according to the impact matrix, with:
- Idempotent execution per (event, effect type)
- Bounded retry with backoff
- Dead letters for permanently failing effects

Producers only write a system event plus its outbox row. Everything after
that is owned by this package:
- Contracts (SystemEvent, EffectRule, EffectRun, ...)
- Repository contract and implementations
- Dispatch engine, batch runner, command surface
"""
