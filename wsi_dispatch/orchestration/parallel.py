from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable

from wsi_dispatch.errors import DispatchCancelled

if TYPE_CHECKING:
    from wsi_dispatch.orchestration.dispatcher import DispatchOutcome

logger = logging.getLogger("wsi_dispatch.parallel")


class CancellationToken:
    """Cooperative cancellation that is only honoured before the network loads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._started = False

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    def cancel(self) -> bool:
        """Request cancellation; refused once the network load has begun."""
        with self._lock:
            if self._started:
                return False
            self._cancelled = True
            return True

    def checkpoint(self) -> None:
        """Raise if cancelled, otherwise mark the run as past the point of no return."""
        with self._lock:
            if self._cancelled:
                raise DispatchCancelled("Dispatch cancelled before the network was loaded")
            self._started = True


class DispatchHandle:
    """Caller's view of a background dispatch."""

    def __init__(
        self,
        future: Future[DispatchOutcome],
        token: CancellationToken,
        *,
        on_cancelled: Callable[[], DispatchOutcome],
    ) -> None:
        self._future = future
        self._token = token
        self._on_cancelled = on_cancelled

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """True when the run will not load its network."""
        if self._future.cancel():
            return True
        return self._token.cancel()

    @property
    def cancelled(self) -> bool:
        return self._future.cancelled() or self._token.cancelled

    def result(self, timeout: float | None = None) -> DispatchOutcome:
        """Wait for the outcome; failures are reported in it, not raised."""
        try:
            return self._future.result(timeout=timeout)
        except CancelledError:
            return self._on_cancelled()

    def add_done_callback(self, fn: Callable[[DispatchHandle], Any]) -> None:
        self._future.add_done_callback(lambda _fut: fn(self))


class DispatchExecutor:
    """Thread pool that runs dispatches in the background."""

    def __init__(self, max_workers: int | None = None) -> None:
        self.max_workers = self._resolve_workers(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="dispatch"
        )

    @staticmethod
    def _resolve_workers(requested: int | None) -> int:
        if requested is not None:
            return max(1, int(requested))
        return max(1, min(4, int(os.cpu_count() or 2)))

    def submit(self, fn: Callable[..., DispatchOutcome], *args: Any, **kwargs: Any):
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self, *, cancel_pending: bool = False) -> None:
        self._executor.shutdown(wait=True, cancel_futures=cancel_pending)

    def __enter__(self) -> DispatchExecutor:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


class InflightTracker:
    """Thread-safe tracker for in-flight dispatch handles."""

    def __init__(
        self,
        *,
        results: list[DispatchOutcome],
        progress=None,
    ) -> None:
        self._results = results
        self._progress = progress
        self._inflight: dict[DispatchHandle, str] = {}
        self._done = threading.Condition()

    def add(self, handle: DispatchHandle, slide_uid: str) -> None:
        with self._done:
            self._inflight[handle] = slide_uid
        handle.add_done_callback(self._on_done)

    def _on_done(self, handle: DispatchHandle) -> None:
        with self._done:
            slide_uid = self._inflight.get(handle)
        if slide_uid is None:
            return
        try:
            outcome = handle.result()
            self._results.append(outcome)
            if outcome.ok:
                logger.info("Processed %s -> %s", slide_uid, outcome.process)
            else:
                logger.error("Failed to process %s: %s", slide_uid, outcome.error)
        finally:
            if self._progress is not None:
                self._progress.update(1)
            with self._done:
                self._inflight.pop(handle, None)
                self._done.notify_all()

    def count(self) -> int:
        with self._done:
            return len(self._inflight)

    def wait_until_at_most(self, limit: int) -> None:
        """Block until in-flight dispatches are <= limit."""
        limit = max(0, int(limit))
        with self._done:
            while len(self._inflight) > limit:
                self._done.wait()
