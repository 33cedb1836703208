"""
Error taxonomy, retry policy and error bookkeeping for the portfolio engine
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import structlog

from tenacity import (
    AsyncRetrying, retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


# Exception classes for different error scenarios
class PortfolioEngineError(Exception):
    """Base class for every typed engine error"""
    pass


class UpstreamUnavailable(PortfolioEngineError):
    """A protocol, oracle or RPC data source could not be reached. Retryable."""
    pass


class InsufficientData(PortfolioEngineError):
    """A required input is missing and must not be fabricated"""
    pass


class InsufficientFunds(PortfolioEngineError):
    """The owner cannot fund the requested action"""
    pass


class SlippageExceeded(PortfolioEngineError):
    """Execution price moved beyond the accepted tolerance"""
    pass


class Unsupported(PortfolioEngineError):
    """Unknown platform or an action the protocol does not offer"""
    pass


class NotFound(PortfolioEngineError):
    """Unknown strategy, position or alert id"""
    pass


# Only transient failures are retried; caller errors never are
RETRYABLE_ERRORS = (UpstreamUnavailable,)

_retry_logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple = RETRYABLE_ERRORS
):
    """Retry decorator with exponential backoff"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True
    )


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple = RETRYABLE_ERRORS,
    **kwargs
) -> Any:
    """Await ``func`` under the same policy as :func:`retry_with_backoff`.

    Useful when the attempt count comes from settings at call time.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        reraise=True
    ):
        with attempt:
            return await func(*args, **kwargs)


class ErrorCollector:
    """Collects and analyzes errors for better observability"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        error_info = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": error_type,
            "message": str(error),
            "context": context or {}
        }

        self.errors.append(error_info)

        # Maintain size limit
        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.warning(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=hours)

        recent_errors = [
            error for error in self.errors
            if datetime.fromisoformat(error["timestamp"]) > cutoff_time
        ]

        error_types = {}
        for error in recent_errors:
            error_type = error["type"]
            if error_type not in error_types:
                error_types[error_type] = {"count": 0, "examples": []}

            error_types[error_type]["count"] += 1
            if len(error_types[error_type]["examples"]) < 3:
                error_types[error_type]["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"],
                    "context": error["context"]
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types
        }
