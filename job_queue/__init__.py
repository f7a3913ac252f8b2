"""
Job Queue — attempt-tracked background work over a durable queue store.

- Producers ENQUEUE jobs onto named queues
- The runtime POLLS each registered queue and invokes its handler
- Failures follow the queue's policy: retry with backoff, dead-letter, or fail
- Supports Redis (production) and in-memory (dev/test) backends
"""
