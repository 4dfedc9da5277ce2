"""Loading cache of Picture objects.

Pictures are loaded lazily through a loader callable, at most once per
key even under concurrent requests. An optional size bound evicts the
least recently used entry; every removal (eviction or invalidation)
goes through a removal listener, which the bank uses for write-back.
Evicted pictures that are still referenced elsewhere stay reachable
through a weak map, so one id never has two live Picture objects.
"""

import logging
import threading
import weakref
from collections import OrderedDict
from concurrent.futures import Future
from typing import Callable, Optional

from ..exceptions import ExecutionError
from ..models import Picture

logger = logging.getLogger(__name__)


class PictureCache:
    """Concurrent LRU cache keyed by picture id.

    Example:
        >>> cache = PictureCache(loader=bank_load, max_size=1000, on_removal=write_back)
        >>> picture = cache.get("559AEAD0...")
        >>> cache.invalidate_all()  # write_back runs for every entry
    """

    def __init__(
        self,
        loader: Callable[[str], Picture],
        max_size: int = 0,
        on_removal: Optional[Callable[[Picture], None]] = None,
    ):
        """Initialize the cache.

        Args:
            loader: Builds the picture for an id; may raise
            max_size: Maximum number of entries (0 = unbounded)
            on_removal: Called with every picture leaving the cache
        """
        self._loader = loader
        self.max_size = max_size
        self._on_removal = on_removal
        self._entries: OrderedDict[str, Picture] = OrderedDict()
        self._loading: dict[str, Future] = {}
        self._live: weakref.WeakValueDictionary[str, Picture] = weakref.WeakValueDictionary()
        self._lock = threading.Lock()
        self._generation = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, picture_id: str) -> bool:
        with self._lock:
            return picture_id in self._entries

    def get(self, picture_id: str) -> Picture:
        """Get a picture, loading it on a miss.

        Concurrent misses on the same id share one load.

        Raises:
            ExecutionError: If the loader fails
        """
        with self._lock:
            picture = self._entries.get(picture_id)
            if picture is not None:
                # Move to end (most recently used)
                self._entries.move_to_end(picture_id)
                return picture
            picture = self._live.get(picture_id)
            if picture is not None:
                # Evicted but still held by a caller: revive that instance
                self._entries[picture_id] = picture
                evicted = self._evict_locked()
            else:
                pending = self._loading.get(picture_id)
                if pending is None:
                    pending = Future()
                    self._loading[picture_id] = pending
                    owner = True
                    generation = self._generation
                else:
                    owner = False

        if picture is not None:
            for old in evicted:
                self._removed(old)
            return picture

        if not owner:
            try:
                return pending.result()
            except ExecutionError:
                raise
            except Exception as e:
                raise ExecutionError(f"Loading picture {picture_id} failed: {e}") from e

        try:
            picture = self._loader(picture_id)
        except Exception as e:
            with self._lock:
                del self._loading[picture_id]
            error = e if isinstance(e, ExecutionError) else ExecutionError(
                f"Loading picture {picture_id} failed: {e}"
            )
            pending.set_exception(error)
            if error is e:
                raise
            raise error from e

        evicted = []
        with self._lock:
            del self._loading[picture_id]
            # An invalidate_all during the load means the bank is flushing
            if generation == self._generation:
                self._entries[picture_id] = picture
                self._live[picture_id] = picture
                evicted = self._evict_locked()
        pending.set_result(picture)
        for old in evicted:
            self._removed(old)
        return picture

    def get_if_present(self, picture_id: str) -> Optional[Picture]:
        """Cached or still referenced picture, or None; never loads."""
        with self._lock:
            picture = self._entries.get(picture_id)
            return picture if picture is not None else self._live.get(picture_id)

    def put(self, picture: Picture) -> None:
        """Insert a picture built elsewhere (freshly ingested)."""
        with self._lock:
            self._entries[picture.id] = picture
            self._entries.move_to_end(picture.id)
            self._live[picture.id] = picture
            evicted = self._evict_locked()
        for old in evicted:
            self._removed(old)

    def values(self) -> list[Picture]:
        """Snapshot of the cached pictures, plus evicted ones still in use."""
        with self._lock:
            pictures = list(self._entries.values())
            pictures.extend(p for key, p in self._live.items() if key not in self._entries)
            return pictures

    def invalidate(self, picture_id: str) -> bool:
        """Drop one entry. Returns False if it wasn't cached."""
        with self._lock:
            picture = self._entries.pop(picture_id, None)
            self._live.pop(picture_id, None)
        if picture is None:
            return False
        self._removed(picture)
        return True

    def invalidate_all(self) -> int:
        """Drop every entry, running the removal listener on each.

        Returns:
            Number of entries removed
        """
        with self._lock:
            pictures = list(self._entries.values())
            self._entries.clear()
            self._live.clear()
            self._generation += 1
        for picture in pictures:
            self._removed(picture)
        return len(pictures)

    def _evict_locked(self) -> list[Picture]:
        evicted = []
        while self.max_size and len(self._entries) > self.max_size:
            old = self._entries.popitem(last=False)[1]
            logger.debug(f"Evicting {old.id[:12]} from picture cache")
            evicted.append(old)
        return evicted

    def _removed(self, picture: Picture) -> None:
        if self._on_removal is None:
            return
        try:
            self._on_removal(picture)
        except Exception:
            logger.exception(f"Removal listener failed for {picture.id[:12]}")
