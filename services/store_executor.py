"""Bounded execution of store operations."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from concurrent.futures import wait
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Optional, Set, TypeVar

from datastore.telemetry_store import StoreTimeoutError
from settings import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreExecutor:
    """Runs store calls on a worker pool so every call is bounded by a timeout.

    ``call`` waits for the result; ``dispatch`` is fire-and-forget and only
    reports failures through the log.
    """

    def __init__(self, workers: int = 4, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="store")
        self._pending: Set[Future[Any]] = set()
        self._pending_lock = Lock()

    def call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self.executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            # Only a call still queued is cancelled; a running one may still commit.
            future.cancel()
            logger.error(
                "Store call %s timed out after %.1fs", operation, self.timeout,
                extra={"reason": "timeout"},
            )
            raise StoreTimeoutError(f"{operation} timed out") from exc

    def dispatch(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        device_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Future[Any]:
        future = self.executor.submit(
            self._run_logged, operation, device_id, fn, *args, **kwargs
        )
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(
            lambda done: self._on_dispatched_done(done, operation, device_id)
        )
        return future

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for fire-and-forget calls submitted so far."""
        with self._pending_lock:
            pending = set(self._pending)
        if pending:
            wait(pending, timeout=timeout if timeout is not None else self.timeout)

    def shutdown(self) -> None:
        """Clean up executor resources during application shutdown."""
        self.executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _run_logged(
        operation: str,
        device_id: Optional[str],
        fn: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        # Logged inside the worker so the record exists before the future completes.
        try:
            return fn(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "Background store call %s failed: %s", operation, exc,
                extra={"device_id": device_id, "reason": type(exc).__name__},
            )
            raise

    def _on_dispatched_done(
        self, future: Future[Any], operation: str, device_id: Optional[str]
    ) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.warning(
                "Background store call %s was cancelled", operation,
                extra={"device_id": device_id},
            )


@lru_cache
def build_default_store_executor() -> StoreExecutor:
    settings = get_settings()
    return StoreExecutor(
        workers=settings.store_workers,
        timeout=settings.store_timeout_seconds,
    )
