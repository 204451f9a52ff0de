"""
queuectl - Persistent Multi-Process Job Queue

Enqueue shell commands as jobs and run them on a pool of worker processes with
priority ordering, exponential-backoff retries and a dead letter queue.
"""

__version__ = "1.0.0"
