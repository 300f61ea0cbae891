"""
Background job infrastructure.

This package provides a durable, at-least-once job pipeline with:
- Postgres-backed queue with atomic single-statement claiming
- Push delivery to an external dispatcher as an alternative transport
- Registry-based pluggable handlers, injected into the executor
- Idempotent processing keyed by a content-derived job id
- Bounded retries with permanent purge after max attempts
"""
