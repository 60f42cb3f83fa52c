"""Retrying store operations and probing component health."""

import asyncio
import random
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger

logger = get_logger(__name__)


class RetryPolicy:
    """How often, and after which errors, an operation is attempted again."""

    def __init__(
        self,
        attempts: int = 3,
        initial_delay: float = 0.05,
        max_delay: float = 2.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        retry_on: Tuple[Type[Exception], ...] = (TransientError, StorageError),
    ):
        """
        Args:
            attempts: Total attempts, including the first one
            initial_delay: Seconds to sleep after the first failure
            max_delay: Upper bound for any single sleep
            multiplier: Growth factor of the sleep between attempts
            jitter: Randomize each sleep to between half and all of it
            retry_on: Exception types worth another attempt
        """
        self.attempts = attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.retry_on = retry_on

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, self.retry_on):
            return False
        # Engine errors carry their own verdict, e.g. a bad column name never heals
        if isinstance(error, WorkflowEngineError):
            return error.recoverable
        return True

    def backoff(self, failures: int) -> float:
        """Seconds to sleep after ``failures`` consecutive failures."""
        delay = min(self.initial_delay * (self.multiplier ** (failures - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(policy: Optional[RetryPolicy] = None):
    """Decorator re-invoking a synchronous callable according to ``policy``."""
    policy = policy or RetryPolicy()

    def decorator(func: Callable) -> Callable:
        recovery_logger = ErrorRecoveryLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            failures = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    failures += 1
                    if failures >= policy.attempts or not policy.is_retryable(e):
                        if failures > 1:
                            recovery_logger.log_recovery_failure(func.__name__, e, failures)
                        raise
                    recovery_logger.log_recovery_attempt(func.__name__, e, failures, policy.attempts)
                    time.sleep(policy.backoff(failures))

        return wrapper

    return decorator


class HealthChecker:
    """Named probes of the service's dependencies, run on demand."""

    def __init__(self):
        self.checks: Dict[str, Tuple[Callable, float]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a probe. It may be sync or async; it fails by raising."""
        self.checks[name] = (check_func, timeout)
        logger.info(f"Registered health check: {name}")

    async def _invoke(self, check_func: Callable) -> Any:
        if asyncio.iscoroutinefunction(check_func):
            return await check_func()
        # Blocking probes (a database ping) run off the event loop
        return await asyncio.to_thread(check_func)

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run one probe and describe its outcome."""
        if name not in self.checks:
            return {"status": "error", "message": f"Health check '{name}' not found",
                    "timestamp": datetime.utcnow().isoformat()}

        check_func, timeout = self.checks[name]
        started = time.monotonic()
        try:
            detail = await asyncio.wait_for(self._invoke(check_func), timeout=timeout)
            result: Dict[str, Any] = {"status": "healthy", "message": "Check passed"}
            if isinstance(detail, str):
                result["message"] = detail
            elif isinstance(detail, dict):
                result.update(detail)
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {timeout}s"}
        except Exception as e:
            logger.warning(f"Health check {name} failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        result["timestamp"] = datetime.utcnow().isoformat()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run every probe concurrently; the service is healthy only if all are."""
        names = list(self.checks)
        outcomes = await asyncio.gather(*(self.run_check(name) for name in names))
        results = dict(zip(names, outcomes))
        healthy = all(result["status"] == "healthy" for result in outcomes)
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat(),
        }
