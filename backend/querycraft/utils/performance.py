import time
import logging
import functools
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def log_execution_time(func: Callable) -> Callable:
    """
    Decorator to log the execution time of a pipeline step.

    Args:
        func: The function to be decorated

    Returns:
        The wrapped function with execution time logging
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            duration = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Function {func.__module__}.{func.__qualname__} executed in {duration:.2f}ms",
                extra={"duration": duration, "function": f"{func.__module__}.{func.__qualname__}"}
            )

    return wrapper


def async_log_execution_time(func: Callable) -> Callable:
    """
    Decorator to log the execution time of an async pipeline step.

    Args:
        func: The async function to be decorated

    Returns:
        The wrapped async function with execution time logging
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Async function {func.__module__}.{func.__qualname__} executed in {duration:.2f}ms",
                extra={"duration": duration, "function": f"{func.__module__}.{func.__qualname__}"}
            )

    return wrapper


class PerformanceTracker:
    """
    Context manager for timing a block such as a completion call or a query.

    The elapsed time stays available as ``duration_ms`` after the block exits,
    so callers can store it next to their results.

    Example:
        with PerformanceTracker("mongodb_find") as tracker:
            rows = list(cursor)
        record.execution_time = f"{tracker.duration_ms:.0f}ms"
    """

    def __init__(self, operation_name: str):
        self.operation_name = operation_name
        self.start_time: Optional[float] = None
        self.duration_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return

        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            logger.warning(
                f"Operation '{self.operation_name}' failed after {self.duration_ms:.2f}ms",
                extra={
                    "duration": self.duration_ms,
                    "operation": self.operation_name,
                    "error": str(exc_val)
                }
            )
        else:
            logger.info(
                f"Operation '{self.operation_name}' completed in {self.duration_ms:.2f}ms",
                extra={"duration": self.duration_ms, "operation": self.operation_name}
            )
