from __future__ import annotations

from .config import RetryConfig
from .retry import Retry, RetryLogicError, log_before_sleep, retry

__all__ = [
    "Retry",
    "RetryConfig",
    "RetryLogicError",
    "log_before_sleep",
    "retry",
]
