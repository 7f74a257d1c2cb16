from .retry import RetryPolicy, schedule_retry

__all__ = ["RetryPolicy", "schedule_retry"]
