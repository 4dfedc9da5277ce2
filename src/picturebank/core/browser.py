"""Bidirectional cursor over an ordered list of picture ids."""

import itertools
import logging
import threading
from typing import Any, Callable, Iterator, Optional, Sequence

from ..events import PictureChangedEvent
from ..exceptions import NoNextError, NoPreviousError
from ..models import Picture

logger = logging.getLogger(__name__)

_browser_ids = itertools.count(1)


class Browser:
    """Cursor over an immutable snapshot of picture ids.

    The cursor starts on the first picture (index 0, or -1 when the
    snapshot is empty). Every move loads the target picture through the
    loader and then notifies the browser's observers and the optional
    event sink with a ``PictureChangedEvent``.

    Example:
        >>> browser = bank.get_all()
        >>> browser.current().id
        '559AEAD0...'
        >>> while browser.has_next():
        ...     picture = browser.next()
    """

    def __init__(
        self,
        ids: Sequence[str],
        loader: Callable[[str], Picture],
        data_source: Any = None,
        event_sink: Optional[Callable[[PictureChangedEvent], None]] = None,
    ):
        """Initialize the browser.

        Args:
            ids: Picture ids in browsing order (copied)
            loader: Loads a picture by id; may raise ExecutionError
            data_source: The owning bank, for callers that need it back
            event_sink: Receives every PictureChangedEvent (e.g. EventBus.publish)
        """
        self._ids = tuple(ids)
        self._loader = loader
        self._data_source = data_source
        self._event_sink = event_sink
        self._observers: list[Callable[[PictureChangedEvent], None]] = []
        self._lock = threading.RLock()
        self._index = 0 if self._ids else -1
        self.browser_id = next(_browser_ids)

    @property
    def ids(self) -> tuple[str, ...]:
        return self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        """Iterate the snapshot ids; the cursor doesn't move."""
        return iter(self._ids)

    def data_source(self) -> Any:
        return self._data_source

    # =========================================================================
    # CURSOR
    # =========================================================================

    def current_index(self) -> int:
        with self._lock:
            return self._index

    def next_index(self) -> int:
        with self._lock:
            return self._index + 1

    def previous_index(self) -> int:
        with self._lock:
            return self._index - 1

    def has_next(self) -> bool:
        with self._lock:
            return self._index + 1 < len(self._ids)

    def has_previous(self) -> bool:
        with self._lock:
            return self._index > 0

    def current(self) -> Optional[Picture]:
        """Picture under the cursor, or None for an empty browser.

        Raises:
            ExecutionError: If the picture can't be loaded
        """
        with self._lock:
            if self._index < 0:
                return None
            return self._loader(self._ids[self._index])

    def next(self) -> Picture:
        """Move forward one picture and return it.

        Raises:
            NoNextError: If the cursor is on the last picture
            ExecutionError: If the picture can't be loaded (cursor unchanged)
        """
        with self._lock:
            if self._index + 1 >= len(self._ids):
                raise NoNextError(f"No picture after index {self._index}")
            picture = self._loader(self._ids[self._index + 1])
            self._index += 1
        self._emit(picture)
        return picture

    def previous(self) -> Picture:
        """Move back one picture and return it.

        Raises:
            NoPreviousError: If the cursor is on the first picture
            ExecutionError: If the picture can't be loaded (cursor unchanged)
        """
        with self._lock:
            if self._index <= 0:
                raise NoPreviousError(f"No picture before index {self._index}")
            picture = self._loader(self._ids[self._index - 1])
            self._index -= 1
        self._emit(picture)
        return picture

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def subscribe(self, observer: Callable[[PictureChangedEvent], None]) -> None:
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: Callable[[PictureChangedEvent], None]) -> bool:
        """Remove an observer. Returns False if it wasn't subscribed."""
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)
                return True
            return False

    def _emit(self, picture: Picture) -> None:
        event = PictureChangedEvent(picture_id=picture.id, browser_id=self.browser_id)
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(f"Browser observer {observer!r} failed")
        if self._event_sink is not None:
            self._event_sink(event)

    def __repr__(self) -> str:
        return f"Browser(id={self.browser_id}, size={len(self._ids)}, index={self.current_index()})"
