"""Decorators for application functionality."""

import time
import functools
from typing import Callable, Optional
from datetime import datetime

from app.core.v1.log_manager import LogManager
from app.core.v1.exceptions import RuntimeException
from app.settings.v1.general import SETTINGS


def retry(
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
    exceptions: tuple = (Exception,)
):
    """Decorator for retry functionality.

    Args:
        max_retries (Optional[int]): Maximum number of retries.
        delay (Optional[float]): Delay between retries in seconds.
        exceptions (tuple): Tuple of exceptions to catch and retry.

    Returns:
        Callable: Decorated function.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = LogManager(func.__module__)
            retries = SETTINGS.NUMBER_OF_RETRIES if max_retries is None else max_retries
            wait = SETTINGS.SECONDS_BETWEEN_RETRIES if delay is None else delay

            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as err:
                    if attempt == retries:
                        logger.error(
                            f"Function {func.__name__} failed after {retries} retries",
                            error=str(err),
                            attempt=attempt + 1
                        )
                        raise RuntimeException(
                            f"Function {func.__name__} failed after {retries} retries: {err}"
                        ) from err

                    logger.warning(
                        f"Function {func.__name__} failed, retrying...",
                        error=str(err),
                        attempt=attempt + 1,
                        max_retries=retries
                    )
                    time.sleep(wait)

        return wrapper
    return decorator


def log_execution_time(func: Callable) -> Callable:
    """Decorator to log function execution time.

    Args:
        func (Callable): Function to decorate.

    Returns:
        Callable: Decorated function.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = LogManager(func.__module__)
        start_time = time.time()

        try:
            result = func(*args, **kwargs)
            execution_time = time.time() - start_time

            logger.debug(
                f"Function {func.__name__} executed successfully",
                execution_time=f"{execution_time:.3f}s",
                timestamp=datetime.now().isoformat()
            )

            return result

        except Exception as err:
            execution_time = time.time() - start_time

            logger.error(
                f"Function {func.__name__} failed",
                execution_time=f"{execution_time:.3f}s",
                error=str(err),
                timestamp=datetime.now().isoformat()
            )
            raise

    return wrapper
