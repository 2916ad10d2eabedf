"""
Message Queue — Decouples subscription admission from notification delivery.

- The admission engine PUBLISHES notification jobs to a queue
- The notification consumer CONSUMES jobs and runs the registered handler
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
