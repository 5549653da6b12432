"""
Message Queue — Decouples paced outbound messages from the inbound path.

- The dispatch loop PUBLISHES deferred commands with their not_before
- The consumer SENDS them once due, retrying and dead-lettering failures
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
