"""Deferred write-back of modified pictures.

One worker thread per bank. A modified picture is queued once; the
worker writes it no sooner than ``modified_ts + delay``, so a burst of
edits on the same picture lands as a single write carrying the latest
state.
"""

import logging
import queue
import threading
from typing import Callable

from ..models import Picture, now_ms

logger = logging.getLogger(__name__)

# Wakes the worker for shutdown
_STOP = object()


class DeferredUpdater:
    """Queue of pictures waiting for write-back.

    Example:
        >>> updater = DeferredUpdater(bank.write_back, delay_ms=10_000)
        >>> updater.start()
        >>> updater.schedule(picture)  # written ~10s after its last change
        >>> updater.stop()             # pending pictures are flushed
    """

    def __init__(self, write: Callable[[Picture], None], delay_ms: int, name: str = "pb-updater"):
        """Initialize the updater.

        Args:
            write: Persists one picture; failures are logged
            delay_ms: Minimum age of a modification before it's written
            name: Worker thread name
        """
        self._write = write
        self.delay_ms = delay_ms
        self._queue: queue.Queue = queue.Queue()
        self._pending: set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._started = True
            self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def schedule(self, picture: Picture) -> bool:
        """Queue a picture for write-back.

        Returns:
            False if it was already queued or the updater is stopped
        """
        if self._stop.is_set():
            return False
        with self._lock:
            if picture.id in self._pending:
                return False
            self._pending.add(picture.id)
        self._queue.put(picture)
        return True

    def stop(self, timeout: float | None = None) -> None:
        """Stop the worker after flushing every queued picture."""
        self._stop.set()
        self._queue.put(_STOP)
        if self._started:
            self._thread.join(timeout)
        else:
            self._drain()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            self._wait_until_due(item)
            self._process(item)
        self._drain()

    def _wait_until_due(self, picture: Picture) -> None:
        # Re-read modified_ts after each wake: later edits push the write back
        while not self._stop.is_set():
            remaining_ms = picture.modified_ts + self.delay_ms - now_ms()
            if remaining_ms <= 0:
                return
            logger.debug(f"Waiting {remaining_ms}ms before writing {picture.id[:12]}")
            self._stop.wait(remaining_ms / 1000)

    def _drain(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is not _STOP:
                self._process(item)

    def _process(self, picture: Picture) -> None:
        with self._lock:
            self._pending.discard(picture.id)
        if not picture.dirty:
            return
        try:
            self._write(picture)
        except Exception as e:
            # Picture stays dirty; the next change or close retries it
            logger.error(f"Deferred write of {picture.id[:12]} failed: {e}")
