"""Startup connection retries for backing services."""

import time
import logging
from typing import Callable, TypeVar

from surgecast.common.config import CONNECT_RETRY_ATTEMPTS, CONNECT_RETRY_DELAY_SECONDS
from surgecast.common.errors import DependencyUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def connect_with_retry(
    service: str,
    connect: Callable[[], T],
    attempts: int = CONNECT_RETRY_ATTEMPTS,
    delay: float = CONNECT_RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call connect() until it returns, sleeping `delay` between failures.

    Args:
        service: Name used in log lines and the final error
        attempts: Give up after this many failures; 0 retries forever

    Raises:
        DependencyUnavailable: attempts exhausted
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return connect()
        except Exception as e:
            if attempts and attempt >= attempts:
                raise DependencyUnavailable(service, attempt, e) from e
            logger.warning(f"{service} not reachable (attempt {attempt}): {e}; retrying in {delay}s")
            sleep(delay)
