"""Bounded, retrying provider calls.

Resource handlers are blocking. Every call runs in the default thread pool
under a per-call timeout, and transient failures are retried with
exponential backoff and jitter. Backoff waits are cut short by
cancellation.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from typing import Any, TypeVar

from .config import Config
from .errors import (
    OperationTimeoutError,
    PermanentError,
    ProvisioningCancelledError,
    ProvisioningError,
    TransientError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_late_outcome(operation: str, future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    error = future.exception()
    logger.warning(
        f"{operation} finished after timing out",
        extra={"operation": operation, "error": str(error) if error else None},
    )


class ProviderCaller:
    """Runs blocking provider calls with timeout and retry."""

    def __init__(self, config: Config, cancel_event: asyncio.Event | None = None) -> None:
        self._config = config
        self._cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Execute one blocking call with the configured timeout.

        A timed-out call keeps running in its worker thread. Its future is
        left alone and handed over on the OperationTimeoutError, so the
        caller can still learn whether the call went through.

        Raises:
            OperationTimeoutError: If the call exceeds the timeout.
            ProvisioningError: As raised by the handler.
            PermanentError: Wrapping any other exception from the handler.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.call_timeout_seconds

        future = loop.run_in_executor(None, functools.partial(fn, *args))
        done, _ = await asyncio.wait({future}, timeout=timeout)
        if not done:
            logger.error(
                f"{operation} timed out",
                extra={"operation": operation, "timeout_seconds": timeout},
            )
            future.add_done_callback(functools.partial(_log_late_outcome, operation))
            raise OperationTimeoutError(f"{operation} timed out after {timeout}s", pending=future)

        try:
            return future.result()
        except ProvisioningError:
            raise
        except Exception as e:
            raise PermanentError(f"{operation} failed: {type(e).__name__}: {e}") from e

    async def call_with_retry(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        on_attempt: Callable[[], Any] | None = None,
    ) -> T:
        """Execute a call, retrying TransientError with exponential backoff.

        Args:
            operation: Human-readable name for logging.
            fn: Blocking callable.
            *args: Arguments for fn.
            on_attempt: Invoked before every attempt (e.g. to count attempts).

        Raises:
            TransientError: If every attempt failed transiently.
            ProvisioningCancelledError: If cancelled while backing off.
            ProvisioningError: Any non-transient failure, immediately.
        """
        max_attempts = self._config.max_attempts
        last_error: TransientError | None = None

        for attempt in range(1, max_attempts + 1):
            if on_attempt is not None:
                on_attempt()
            try:
                return await self.call(operation, fn, *args)
            except TransientError as e:
                last_error = e

                if attempt < max_attempts:
                    backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        f"{operation} failed, retrying",
                        extra={
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await self._backoff(wait_time, operation)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def _backoff(self, wait_time: float, operation: str) -> None:
        if self._cancel_event is None:
            await asyncio.sleep(wait_time)
            return

        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=wait_time)
        except TimeoutError:
            return
        raise ProvisioningCancelledError(f"Cancelled while retrying {operation}")
