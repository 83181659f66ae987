"""
Broker-backed job engine.

- Idempotency ledger (inbox) guarding every delivery
- Retries with exponential backoff through a delayed broker route
- Transactional outbox with a single relay loop
- Drain coordinator bounding graceful shutdown
"""
