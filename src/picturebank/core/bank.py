"""Picture bank: ingestion, caching, browsing and write-back.

A bank owns one database file, a picture tree, a thumbnail tree and a
full-text index. Pictures are stored under their content hash:

    <picture_root>/<id[0..2]>/<id>
    <thumbnail_root>/<id[0..2]>/<id>

Ingestion pipeline (add_picture):
1. Validate the source file
2. Hash it (SHA-256, uppercase hex id)
3. Reject ids already in the bank
4. Identify it with the image tool
5. Copy it into its bucket (never overwriting)
6. Insert the database row and index document in one transaction
7. Record the id, queue the thumbnail, publish PictureAddedEvent

Usage:
    with PictureBank(PictureBankConfig.in_directory("./family", 1)) as bank:
        result = bank.add_directory(Path("~/Photos").expanduser())
        browser = bank.get_all()
"""

import logging
import os
import random as _random
import shutil
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from ..constants import INDEX_DB_FILENAME
from ..events import EventBus, PictureAddedEvent
from ..exceptions import (
    AddErrorKind,
    CorruptIndexError,
    ExecutionError,
    NoOpenPictureBankError,
    PictureAddError,
    PictureBankError,
    PictureIndexError,
    ProcessError,
    SqlError,
)
from ..models import AddResult, Picture, PictureState, Tag, now_ms
from ..services.image_tools import ImageTool, select_image_tool
from ..storage.index import Indexer, PictureQuery
from ..storage.sqlite import PersistenceGateway
from ..utils.config import PictureBankConfig
from ..utils.image import (
    bucket_path,
    check_directory,
    compute_picture_id,
    ensure_bucket_directories,
    is_supported_image,
    validate_source,
)
from .browser import Browser
from .cache import PictureCache
from .processor import ImageProcessor
from .tags import TagRepository
from .updater import DeferredUpdater

module_logger = logging.getLogger(__name__)


def pick_random(ids: Sequence[str], n: int, rng: Optional[_random.Random] = None) -> list[str]:
    """Pick ``n`` distinct ids in one pass, keeping their relative order.

    Each index is accepted with probability left_to_pick / left_to_look,
    which makes every n-subset equally likely without building a
    permutation. Asking for more ids than available returns them all.
    """
    rng = rng or _random.Random()
    if n >= len(ids):
        return list(ids)
    picked: list[str] = []
    left_to_pick = n
    left_to_look = len(ids)
    i = 0
    while left_to_pick > 0:
        if rng.randrange(left_to_look) < left_to_pick:
            picked.append(ids[i])
            left_to_pick -= 1
        left_to_look -= 1
        i += 1
    return picked


class PictureBank:
    """One self-contained picture library.

    Thread-safe: ingestion, browsing, tag edits and picture edits may
    run from any thread. Picture edits are written back by a deferred
    update worker, at least ``write_delay_seconds`` after the last change.
    """

    def __init__(
        self,
        config: PictureBankConfig,
        bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None,
        tool: Optional[ImageTool] = None,
        rng: Optional[_random.Random] = None,
    ):
        """Open (or create) a bank.

        Args:
            config: Bank identity and tuning
            bus: Event bus for change events (a private one if omitted)
            logger: Logger for this bank (module logger if omitted)
            tool: Image tool backend (chosen from config.image_tool if omitted)
            rng: Random source for random()

        Raises:
            PictureBankError: If a directory is unusable
            SqlError: If the database can't be opened
            PictureIndexError: If the index can't be opened
            ProcessError: If the configured image tool is missing
        """
        self.config = config
        self.bus = bus or EventBus()
        self.logger = logger or module_logger
        self._rng = rng or _random.Random()
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._ids: list[str] = []
        self._id_set: set[str] = set()
        self._in_flight: set[str] = set()
        self._closed = False

        self._check_directories()

        self._gateway = PersistenceGateway(config.db_path)
        self._indexer: Optional[Indexer] = None
        self._processor: Optional[ImageProcessor] = None
        try:
            self._gateway.create_tables()
            self._indexer = Indexer(config.index_dir)
            self._processor = ImageProcessor(
                tool or select_image_tool(config.image_tool),
                config.thumbnail_root,
                thumbnail_size=config.thumbnail_size,
                max_concurrent_identify=config.max_concurrent_identify,
                max_concurrent_other=config.max_concurrent_other,
            )
            self._tags = TagRepository(self._gateway, self.bus)
            self._tags.load()
            ids = self._gateway.select_picture_ids()
        except PictureBankError:
            self._abort_open()
            raise
        self._ids.extend(ids)
        self._id_set.update(ids)

        self._cache = PictureCache(
            self._load_picture,
            max_size=config.cache_size,
            on_removal=self._write_back_if_dirty,
        )
        self._updater = DeferredUpdater(
            self.write_back,
            config.write_delay_ms,
            name=f"pb-updater-{config.picture_bank_id}",
        )
        self._updater.start()
        self.logger.info(
            f"Opened picture bank {self.id} ({len(self._ids)} pictures, "
            f"{len(self._tags) - 1} tags, tool: {self._processor.tool.name})"
        )

    def _check_directories(self) -> None:
        for root in (self.config.picture_root, self.config.thumbnail_root):
            if not ensure_bucket_directories(root):
                raise PictureBankError(f"Directory {root} or one of its buckets is not usable")
        for directory in (self.config.index_dir, self.config.db_path.parent):
            if not check_directory(directory):
                raise PictureBankError(f"Directory {directory} is not readable and writable")

    def _abort_open(self) -> None:
        if self._processor is not None:
            self._processor.shutdown()
        if self._indexer is not None:
            try:
                self._indexer.close()
            except PictureIndexError as e:
                self.logger.error(f"Closing index after failed open: {e}")
        try:
            self._gateway.close()
        except SqlError as e:
            self.logger.error(f"Closing database after failed open: {e}")

    # =========================================================================
    # IDENTITY
    # =========================================================================

    @property
    def id(self) -> int:
        return self.config.picture_bank_id

    @property
    def name(self) -> str:
        return self.config.name or f"bank-{self.id}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tags(self) -> TagRepository:
        return self._tags

    def __lt__(self, other: "PictureBank") -> bool:
        return self.id < other.id

    def __repr__(self) -> str:
        return f"PictureBank(id={self.id}, name={self.name!r}, pictures={self.count()})"

    def _require_open(self) -> None:
        if self._closed:
            raise NoOpenPictureBankError(f"Picture bank {self.id} is closed")

    # =========================================================================
    # INGESTION
    # =========================================================================

    def add_picture(self, path: str | Path) -> str:
        """Ingest one picture file.

        Returns:
            The new picture id

        Raises:
            PictureAddError: With the failure kind; FILE_ALREADY_EXISTS
                carries the id of the stored duplicate
        """
        self._require_open()
        path = Path(path)
        validate_source(path)
        picture_id = compute_picture_id(path)

        with self._lock:
            if picture_id in self._id_set or picture_id in self._in_flight:
                raise PictureAddError(AddErrorKind.FILE_ALREADY_EXISTS, picture_id, str(path))
            self._in_flight.add(picture_id)
        try:
            picture, destination = self._ingest(path, picture_id)
            with self._lock:
                self._ids.append(picture_id)
                self._id_set.add(picture_id)
        finally:
            with self._lock:
                self._in_flight.discard(picture_id)

        self._cache.put(picture)
        self._processor.create_thumbnail(picture_id, destination)
        self.logger.debug(f"Added {path.name} as {picture_id}")
        self.bus.publish(PictureAddedEvent(picture_id=picture_id, picture_bank_id=self.id))
        return picture_id

    def _ingest(self, path: Path, picture_id: str) -> tuple[Picture, Path]:
        try:
            info = self._processor.identify(path)
        except ProcessError as e:
            raise PictureAddError(AddErrorKind.IDENTIFY_EXECUTION_ERROR, picture_id, str(e)) from e

        destination = bucket_path(self.config.picture_root, picture_id)
        self._copy(path, destination, picture_id)

        picture = Picture.from_info(
            picture_id, info, now_ms(), on_modified=self._picture_modified, tag_exists=self._tag_exists
        )
        state = picture.snapshot()
        try:
            with self._gateway.transaction():
                try:
                    self._gateway.insert_picture(state, destination)
                except SqlError as e:
                    raise PictureAddError(AddErrorKind.SQL_INSERT_ERROR, picture_id, str(e)) from e
                try:
                    self._indexer.index_picture(state)
                except CorruptIndexError as e:
                    raise PictureAddError(AddErrorKind.CORRUPT_INDEX_ERROR, picture_id, str(e)) from e
                except PictureIndexError as e:
                    raise PictureAddError(AddErrorKind.INDEX_ERROR, picture_id, str(e)) from e
        except PictureAddError:
            self._discard_copy(destination)
            raise
        except SqlError as e:
            # BEGIN or COMMIT failed: the index may hold a document for nothing
            self._drop_index_document(picture_id)
            self._discard_copy(destination)
            raise PictureAddError(AddErrorKind.SQL_INSERT_ERROR, picture_id, str(e)) from e
        return picture, destination

    def _copy(self, source: Path, destination: Path, picture_id: str) -> None:
        created = False
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with open(source, "rb") as src, open(destination, "xb") as dst:
                created = True
                shutil.copyfileobj(src, dst)
        except FileExistsError as e:
            raise PictureAddError(AddErrorKind.FILE_ALREADY_EXISTS, picture_id, str(destination)) from e
        except OSError as e:
            if created:
                self._discard_copy(destination)
            raise PictureAddError(AddErrorKind.COPY_ERROR, picture_id, str(e)) from e

    def _discard_copy(self, destination: Path) -> None:
        try:
            destination.unlink(missing_ok=True)
        except OSError as e:
            self.logger.error(f"Could not remove {destination}: {e}")

    def _drop_index_document(self, picture_id: str) -> None:
        try:
            self._indexer.delete_picture(picture_id)
        except PictureIndexError as e:
            self.logger.error(f"Could not remove {picture_id} from index: {e}")

    def add_directory(
        self,
        path: str | Path,
        max_depth: Optional[int] = None,
        images_only: bool = False,
    ) -> AddResult:
        """Ingest every regular file under a directory, depth first.

        A failing file is recorded in the result and the walk goes on.

        Args:
            path: Directory to import
            max_depth: Subdirectory levels to descend (config.max_depth if
                None; unlimited if both are None)
            images_only: Skip files without a known image extension instead
                of handing them to the identify tool

        Raises:
            PictureAddError: NOT_A_DIRECTORY, or IO_ERROR if a directory
                can't be listed
        """
        self._require_open()
        path = Path(path)
        if not path.is_dir():
            raise PictureAddError(AddErrorKind.NOT_A_DIRECTORY, detail=str(path))
        if max_depth is None:
            max_depth = self.config.max_depth

        def on_walk_error(e: OSError) -> None:
            raise PictureAddError(AddErrorKind.IO_ERROR, detail=str(e)) from e

        result = AddResult()
        for root, dirs, files in os.walk(path, onerror=on_walk_error):
            root_path = Path(root)
            depth = len(root_path.relative_to(path).parts)
            if max_depth is not None and depth >= max_depth:
                dirs.clear()
            else:
                dirs.sort()
            for name in sorted(files):
                file_path = root_path / name
                if images_only and not is_supported_image(file_path):
                    continue
                try:
                    result.record_success(self.add_picture(file_path))
                except PictureAddError as e:
                    self.logger.warning(f"Skipped {file_path}: {e.kind.message}")
                    result.record_failure(file_path, e.kind)

        self.logger.info(
            f"Imported {path}: {result.ok} added, {len(result.failed)} failed"
        )
        return result

    def create_thumbnail(self, picture: "Picture | str") -> Future:
        """Queue the thumbnail of a stored picture; a no-op if it exists."""
        picture_id = picture.id if isinstance(picture, Picture) else picture
        return self._processor.create_thumbnail(picture_id, self.picture_path(picture_id))

    # =========================================================================
    # LOOKUP & BROWSING
    # =========================================================================

    def count(self) -> int:
        with self._lock:
            return len(self._ids)

    def contains(self, picture_id: str) -> bool:
        with self._lock:
            return picture_id in self._id_set

    def __contains__(self, picture_id: str) -> bool:
        return self.contains(picture_id)

    def __len__(self) -> int:
        return self.count()

    def picture_ids(self) -> list[str]:
        """Snapshot of the id list, in ingestion order."""
        with self._lock:
            return list(self._ids)

    def picture_path(self, picture_id: str) -> Path:
        return bucket_path(self.config.picture_root, picture_id)

    def thumbnail_path(self, picture_id: str) -> Path:
        return bucket_path(self.config.thumbnail_root, picture_id)

    def get_picture(self, picture_id: str) -> Picture:
        """Load a picture through the cache.

        Raises:
            ExecutionError: If the id is unknown or loading fails
        """
        if not self.contains(picture_id):
            raise ExecutionError(f"No picture {picture_id} in bank {self.id}")
        return self._cache.get(picture_id)

    def _load_picture(self, picture_id: str) -> Picture:
        try:
            state = self._gateway.load_picture(picture_id)
        except SqlError as e:
            raise ExecutionError(f"Loading picture {picture_id} failed: {e}") from e
        if state is None:
            raise ExecutionError(f"Picture {picture_id} is not in the database")
        return Picture.from_state(state, on_modified=self._picture_modified, tag_exists=self._tag_exists)

    def _browser(self, ids: Iterable[str]) -> Browser:
        return Browser(list(ids), self.get_picture, data_source=self, event_sink=self.bus.publish)

    def get_all(self) -> Browser:
        """Browser over every picture, in ingestion order."""
        self._require_open()
        return self._browser(self.picture_ids())

    def filter(self, query: "PictureQuery | str | None", limit: Optional[int] = None) -> Browser:
        """Browser over the pictures matching an index query.

        Raises:
            PictureIndexError: If the query is malformed or the index fails
        """
        self._require_open()
        ids = self._indexer.search(query, limit)
        with self._lock:
            return self._browser([i for i in ids if i in self._id_set])

    def filter_by_tags(self, *tags: "Tag | int") -> Browser:
        """Browser over the pictures carrying every given tag.

        Cached pictures are checked on their live tags, so edits not yet
        written back are taken into account.
        """
        self._require_open()
        tag_ids = {tag.tag_id if isinstance(tag, Tag) else tag for tag in tags}
        if not tag_ids:
            return self.get_all()
        try:
            candidates: Optional[set[str]] = None
            for tag_id in tag_ids:
                found = set(self._gateway.select_picture_ids_by_tag(tag_id))
                candidates = found if candidates is None else candidates & found
        except SqlError as e:
            raise ExecutionError(f"Tag filter failed: {e}") from e
        candidates = candidates or set()
        for picture in self._cache.values():
            if tag_ids <= picture.tags:
                candidates.add(picture.id)
            else:
                candidates.discard(picture.id)
        return self._browser(i for i in self.picture_ids() if i in candidates)

    def count_by_tag(self, tag: "Tag | int") -> int:
        """Number of pictures carrying a tag, as persisted."""
        tag_id = tag.tag_id if isinstance(tag, Tag) else tag
        return self._gateway.count_pictures_by_tag(tag_id)

    def random(self, n: int) -> Browser:
        """Browser over ``n`` distinct pictures chosen uniformly at random."""
        self._require_open()
        with self._lock:
            ids = pick_random(self._ids, max(n, 0), self._rng)
        return self._browser(ids)

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    def _picture_modified(self, picture: Picture) -> None:
        self._updater.schedule(picture)

    def _tag_exists(self, tag_id: int) -> bool:
        return self._tags.get_tag(tag_id) is not None

    def update_picture(self, picture: Picture, immediate: bool = False) -> None:
        """Write a picture back now, or queue it for deferred write-back."""
        if immediate:
            self.write_back(picture)
        else:
            self._updater.schedule(picture)

    def write_back(self, picture: Picture) -> None:
        """Persist and re-index the current state of a picture.

        Raises:
            SqlError: If the database update fails (picture stays dirty)
            PictureIndexError: If the index update fails (picture stays dirty)
        """
        # Serialized so an older snapshot never lands after a newer one
        with self._write_lock:
            # A tag removed while this picture held it must not reach the row
            for tag_id in picture.tags:
                if not self._tag_exists(tag_id):
                    picture.discard_tag(tag_id)
            state = picture.snapshot()
            self._gateway.update_picture(state)
            self._indexer.index_picture(state)
            picture.mark_clean(state.modified_ts)
        self.logger.debug(f"Wrote back {picture.id[:12]} (grade {state.grade}, {len(state.tags)} tags)")

    def _write_back_if_dirty(self, picture: Picture) -> None:
        if picture.dirty:
            self.write_back(picture)

    def flush(self) -> int:
        """Write back every dirty cached picture now.

        Returns:
            Number of pictures written
        """
        written = 0
        for picture in self._cache.values():
            if picture.dirty:
                self.write_back(picture)
                written += 1
        return written

    def reindex_picture(self, picture_id: str) -> None:
        """Rewrite the index document of one picture.

        Raises:
            ExecutionError: If the picture can't be loaded
            PictureIndexError: If the index write fails
        """
        picture = self.get_picture(picture_id)
        self._indexer.index_picture(picture.snapshot())

    def reindex_all(self, rebuild: bool = False) -> int:
        """Rebuild the whole index from the pictures.

        Args:
            rebuild: Delete and recreate the index files first (after a
                CorruptIndexError)

        Returns:
            Number of pictures indexed
        """
        self._require_open()
        if rebuild:
            self._recreate_index()
        else:
            self._indexer.clear()
        count = self._indexer.index_all(self._index_states())
        self.logger.info(f"Re-indexed {count} pictures of bank {self.id}")
        return count

    def _index_states(self) -> Iterator[PictureState]:
        # Cached pictures may hold edits not written yet; the rest come
        # straight from the database without filling the cache
        for picture_id in self.picture_ids():
            picture = self._cache.get_if_present(picture_id)
            if picture is not None:
                yield picture.snapshot()
                continue
            state = self._gateway.load_picture(picture_id)
            if state is not None:
                yield state

    def _recreate_index(self) -> None:
        try:
            self._indexer.close()
        except PictureIndexError as e:
            self.logger.warning(f"Closing damaged index: {e}")
        db_path = self.config.index_dir / INDEX_DB_FILENAME
        for suffix in ("", "-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)
        self._indexer = Indexer(self.config.index_dir)

    # =========================================================================
    # TAGS
    # =========================================================================

    def root_tag(self) -> Tag:
        return self._tags.root()

    def get_tag(self, key: "int | str") -> Optional[Tag]:
        return self._tags.get_tag(key)

    def has_tag_named(self, name: str) -> bool:
        return self._tags.has_tag_named(name)

    def tag_set(self) -> frozenset[Tag]:
        return self._tags.tag_set()

    def add_tag(
        self,
        parent: "Tag | int | None",
        name: str,
        description: str = "",
        selectable: bool = True,
    ) -> Tag:
        return self._tags.add_tag(parent, name, description, selectable)

    def edit_tag(
        self,
        tag_id: int,
        parent: "Tag | int | None",
        name: str,
        description: str = "",
        selectable: bool = True,
    ) -> Tag:
        return self._tags.edit_tag(tag_id, parent, name, description, selectable)

    def remove_tag(self, tag_id: int) -> Tag:
        """Delete a tag, detach it from every picture and re-index those.

        Raises:
            TagError: See TagRepository.remove_tag
        """
        try:
            affected = set(self._gateway.select_picture_ids_by_tag(tag_id))
        except SqlError as e:
            self.logger.warning(f"Could not list pictures tagged {tag_id}: {e}")
            affected = set()
        tag = self._tags.remove_tag(tag_id)
        for picture in self._cache.values():
            if picture.discard_tag(tag_id):
                affected.add(picture.id)
        for picture_id in sorted(affected):
            try:
                self.reindex_picture(picture_id)
            except (ExecutionError, PictureIndexError) as e:
                self.logger.error(f"Re-indexing {picture_id[:12]} after tag removal failed: {e}")
        return tag

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def close(self) -> None:
        """Flush pending writes and release every resource.

        Order: update worker, picture cache (write-back of dirty entries),
        image processor, index, database. Failures are logged.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        steps = [
            ("update worker", self._updater.stop),
            ("picture cache", self._cache.invalidate_all),
            ("image processor", self._processor.shutdown),
            ("index", self._indexer.close),
            ("database", self._gateway.close),
        ]
        for label, step in steps:
            try:
                step()
            except Exception as e:
                self.logger.error(f"Closing {label} of bank {self.id} failed: {e}")
        self.logger.info(f"Closed picture bank {self.id}")

    def __enter__(self) -> "PictureBank":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
