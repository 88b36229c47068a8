from __future__ import annotations

from typing import Callable, TypeVar

from warden.logging import get_logger
from warden.service.errors import StoreUnavailable
from warden.storage.errors import BackendUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def read(fn: Callable[..., T], *args, retries: int = 1, operation: str = "read", **kwargs) -> T:
    """Run an idempotent store read, retrying transient failures ``retries`` times."""
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except BackendUnavailable as exc:
            if attempt >= retries:
                logger.error("store_read_failed", operation=operation, attempts=attempt + 1)
                raise StoreUnavailable() from exc
            attempt += 1
            logger.warning("store_read_retry", operation=operation, attempt=attempt)


def write(fn: Callable[..., T], *args, operation: str = "write", **kwargs) -> T:
    """Run a store write exactly once."""
    try:
        return fn(*args, **kwargs)
    except BackendUnavailable as exc:
        logger.error("store_write_failed", operation=operation)
        raise StoreUnavailable() from exc
