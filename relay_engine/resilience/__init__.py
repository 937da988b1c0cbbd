from relay_engine.resilience.retry import (
    TIMEOUTS, RetryPolicy, resilient, resilient_fetch, retry_with_backoff, should_retry, with_timeout,
)
from relay_engine.resilience.request_queue import QueueConfig, RequestQueue

__all__ = [
    "TIMEOUTS", "RetryPolicy", "resilient", "resilient_fetch", "retry_with_backoff",
    "should_retry", "with_timeout", "QueueConfig", "RequestQueue",
]
