"""
Retry and progress helpers used by the ingestion pipeline.

Keeps backoff loops and callback error handling out of pipeline code so
each stage reads as a straight line.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union

from .errors import CancelledUpload
from .models import ProgressUpdate

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay * multiplier ** attempt between tries."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (0-based) failed attempt."""
        return self.base_delay * (self.multiplier ** attempt)


async def _sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise CancelledUpload("Cancelled while waiting to retry")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    description: str = "operation",
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Run ``operation`` up to ``policy.max_attempts`` times.

    Waits ``policy.delay_for(attempt)`` between failures. The last error is
    re-raised once all attempts are used. A set ``cancel_event`` aborts the
    wait with CancelledUpload.
    """
    if policy.max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {policy.max_attempts}")
    last_error: Exception = RuntimeError(f"{description} never ran")
    for attempt in range(policy.max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledUpload(f"Cancelled before {description}")
        try:
            result = await operation()
            if attempt:
                logger.info("%s succeeded on attempt %d", description, attempt + 1)
            return result
        except CancelledUpload:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                "%s attempt %d/%d failed: %s",
                description, attempt + 1, policy.max_attempts, e,
            )
            if attempt < policy.max_attempts - 1:
                delay = policy.delay_for(attempt)
                if sleep is not None:
                    await sleep(delay)
                else:
                    await _sleep(delay, cancel_event)
    raise last_error


async def emit_progress(
    callback: Optional[ProgressCallback],
    update: ProgressUpdate,
) -> None:
    """Invoke a sync or async progress callback; failures are only logged."""
    if callback is None:
        return
    try:
        result = callback(update)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Progress callback failed for file %s: %s", update.file_id, e)
