from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from emergency_dispatch.errors import CollaboratorUnavailable

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[[], T], timeout: float, label: str = "collaborator") -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout`` seconds.

    Any failure, including the timeout, is re-raised as CollaboratorUnavailable.
    The worker is abandoned on timeout rather than joined.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=label)
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise CollaboratorUnavailable(f"{label} timed out after {timeout}s") from exc
    except CollaboratorUnavailable:
        raise
    except Exception as exc:
        raise CollaboratorUnavailable(f"{label} failed: {exc}") from exc
    finally:
        executor.shutdown(wait=False)


def try_primary(
    primary: Optional[Callable[[], T]],
    fallback: Callable[[], T],
    *,
    timeout: float,
    label: str,
) -> T:
    """Prefer ``primary`` within ``timeout``; on any failure return ``fallback()``.

    Collaborator errors never escape this function. Errors raised by the
    fallback itself do, since those are local programming errors.
    """
    if primary is None:
        return fallback()
    try:
        return call_with_timeout(primary, timeout, label)
    except CollaboratorUnavailable as exc:
        LOGGER.warning("%s unavailable, using local fallback: %s", label, exc)
        return fallback()
