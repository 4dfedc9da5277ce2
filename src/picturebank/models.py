"""Data models for picturebank.

Defines the picture, tag and ingestion-result entities shared by the
storage, index and bank layers.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from picturebank.constants import MAX_GRADE, MIN_GRADE, ROOT_TAG_ID
from picturebank.exceptions import AddErrorKind, TagError, TagErrorKind


def now_ms() -> int:
    """Current time as a millisecond epoch."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class Tag:
    """A node of a bank's tag tree.

    Attributes:
        tag_id: Unique identifier within the bank
        name: Display name, unique within the bank
        description: Free text, possibly empty
        parent_id: Id of the parent tag (ROOT_TAG_ID for top-level tags)
        selectable: False for pure categories that can't be attached to pictures
        editable: False only for the synthetic root
    """

    tag_id: int
    name: str
    description: str = ""
    parent_id: int = ROOT_TAG_ID
    selectable: bool = True
    editable: bool = True

    @property
    def is_root(self) -> bool:
        return self.tag_id == ROOT_TAG_ID

    def to_dict(self) -> dict:
        return {
            "tag_id": self.tag_id,
            "name": self.name,
            "description": self.description,
            "parent_id": self.parent_id,
            "selectable": self.selectable,
            "editable": self.editable,
        }


@dataclass(frozen=True)
class PictureInfo:
    """What the identify tool reports about a picture file."""

    width: int
    height: int
    original_name: str
    format: Optional[str] = None


@dataclass(frozen=True)
class PictureState:
    """Immutable snapshot of a picture, as written to the database and index."""

    picture_id: str
    original_name: str
    width: int
    height: int
    added_ts: int
    creation_ts: int
    modified_ts: int
    grade: int
    tags: frozenset[int]

    def to_dict(self) -> dict:
        return {
            "id": self.picture_id,
            "original_name": self.original_name,
            "width": self.width,
            "height": self.height,
            "added_ts": self.added_ts,
            "creation_ts": self.creation_ts,
            "modified_ts": self.modified_ts,
            "grade": self.grade,
            "tags": sorted(self.tags),
        }


class Picture:
    """A picture stored in a bank.

    Identity and dimensions are fixed at ingestion. Grade and tags are
    mutable; every effective change bumps ``modified_ts``, marks the picture
    dirty and notifies the owning bank so it can schedule a write-back.

    All mutable state is guarded by a per-picture lock, exposed as
    ``picture.lock`` (a ``threading.Condition``).
    """

    def __init__(
        self,
        picture_id: str,
        original_name: str,
        width: int,
        height: int,
        added_ts: int,
        creation_ts: int,
        modified_ts: int,
        grade: int = MIN_GRADE,
        tags: Iterable[int] = (),
        on_modified: Optional[Callable[["Picture"], None]] = None,
        tag_exists: Optional[Callable[[int], bool]] = None,
    ):
        self._id = picture_id
        self._original_name = original_name
        self._width = width
        self._height = height
        self._added_ts = added_ts
        self._creation_ts = creation_ts
        self._modified_ts = modified_ts
        self._grade = grade
        self._tags: set[int] = set(tags)
        self._dirty = False
        self._on_modified = on_modified
        self._tag_exists = tag_exists
        self._lock = threading.Condition(threading.RLock())

    @classmethod
    def from_info(
        cls,
        picture_id: str,
        info: PictureInfo,
        timestamp: int,
        on_modified: Optional[Callable[["Picture"], None]] = None,
        tag_exists: Optional[Callable[[int], bool]] = None,
    ) -> "Picture":
        """Create a freshly ingested picture: grade 0, no tags."""
        return cls(
            picture_id=picture_id,
            original_name=info.original_name,
            width=info.width,
            height=info.height,
            added_ts=timestamp,
            creation_ts=timestamp,
            modified_ts=timestamp,
            on_modified=on_modified,
            tag_exists=tag_exists,
        )

    @classmethod
    def from_state(
        cls,
        state: PictureState,
        on_modified: Optional[Callable[["Picture"], None]] = None,
        tag_exists: Optional[Callable[[int], bool]] = None,
    ) -> "Picture":
        return cls(
            picture_id=state.picture_id,
            original_name=state.original_name,
            width=state.width,
            height=state.height,
            added_ts=state.added_ts,
            creation_ts=state.creation_ts,
            modified_ts=state.modified_ts,
            grade=state.grade,
            tags=state.tags,
            on_modified=on_modified,
            tag_exists=tag_exists,
        )

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def original_name(self) -> str:
        return self._original_name

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def added_ts(self) -> int:
        return self._added_ts

    @property
    def creation_ts(self) -> int:
        return self._creation_ts

    @property
    def lock(self) -> threading.Condition:
        return self._lock

    @property
    def modified_ts(self) -> int:
        with self._lock:
            return self._modified_ts

    @property
    def grade(self) -> int:
        with self._lock:
            return self._grade

    @property
    def tags(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._tags)

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def has_tag(self, tag: "Tag | int") -> bool:
        tag_id = tag.tag_id if isinstance(tag, Tag) else tag
        with self._lock:
            return tag_id in self._tags

    def snapshot(self) -> PictureState:
        """Consistent copy of the current state."""
        with self._lock:
            return PictureState(
                picture_id=self._id,
                original_name=self._original_name,
                width=self._width,
                height=self._height,
                added_ts=self._added_ts,
                creation_ts=self._creation_ts,
                modified_ts=self._modified_ts,
                grade=self._grade,
                tags=frozenset(self._tags),
            )

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add_tag(self, tag: Tag) -> bool:
        """Attach a tag. Returns False if the picture already had it.

        Raises:
            TagError: If the tag is not selectable (categories, root) or
                no longer exists in the bank
        """
        self._check_attachable(tag)
        with self._lock:
            if tag.tag_id in self._tags:
                return False
            self._tags.add(tag.tag_id)
            self._touch()
        self._notify()
        return True

    def remove_tag(self, tag: "Tag | int") -> bool:
        """Detach a tag. Returns False if the picture didn't have it."""
        tag_id = tag.tag_id if isinstance(tag, Tag) else tag
        with self._lock:
            if tag_id not in self._tags:
                return False
            self._tags.discard(tag_id)
            self._touch()
        self._notify()
        return True

    def set_tags(self, tags: Iterable[Tag]) -> bool:
        """Replace the whole tag set. Returns False if nothing changed."""
        tags = list(tags)
        for tag in tags:
            self._check_attachable(tag)
        new_ids = {tag.tag_id for tag in tags}
        with self._lock:
            if new_ids == self._tags:
                return False
            self._tags = new_ids
            self._touch()
        self._notify()
        return True

    def set_grade(self, grade: int) -> bool:
        """Set the grade (0-5). Returns False if unchanged."""
        if not isinstance(grade, int) or not MIN_GRADE <= grade <= MAX_GRADE:
            raise ValueError(f"Grade must be between {MIN_GRADE} and {MAX_GRADE}, got {grade!r}")
        with self._lock:
            if grade == self._grade:
                return False
            self._grade = grade
            self._touch()
        self._notify()
        return True

    def discard_tag(self, tag_id: int) -> bool:
        """Drop a tag that no longer exists, without scheduling a write-back."""
        with self._lock:
            if tag_id not in self._tags:
                return False
            self._tags.discard(tag_id)
            return True

    def mark_clean(self, written_modified_ts: int) -> bool:
        """Clear the dirty flag if nothing changed since the written snapshot."""
        with self._lock:
            if self._modified_ts != written_modified_ts:
                return False
            self._dirty = False
            return True

    def _check_attachable(self, tag: Tag) -> None:
        if not tag.selectable or tag.is_root:
            raise TagError(
                TagErrorKind.ILLEGAL_TAG_ID,
                f"Tag '{tag.name}' is not selectable.",
            )
        if self._tag_exists is not None and not self._tag_exists(tag.tag_id):
            raise TagError(
                TagErrorKind.ILLEGAL_TAG_ID,
                f"Tag '{tag.name}' ({tag.tag_id}) no longer exists.",
            )

    def _touch(self) -> None:
        # strictly increasing, even within one millisecond or if the wall
        # clock goes back; mark_clean relies on it to detect later edits
        self._modified_ts = max(now_ms(), self._modified_ts + 1)
        self._dirty = True
        self._lock.notify_all()

    def _notify(self) -> None:
        if self._on_modified is not None:
            self._on_modified(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Picture):
            return NotImplemented
        return self._id == other._id

    def __hash__(self) -> int:
        return hash(self._id)

    def __repr__(self) -> str:
        return f"Picture(id={self._id[:12]}..., name={self._original_name!r})"


@dataclass
class AddResult:
    """Outcome of a directory import.

    Attributes:
        added: Ids of the pictures added, in traversal order
        failed: (path, kind) for every file that could not be added
    """

    added: list[str] = field(default_factory=list)
    failed: list[tuple[Path, AddErrorKind]] = field(default_factory=list)

    @property
    def ok(self) -> int:
        """Number of pictures added."""
        return len(self.added)

    @property
    def failure_counts(self) -> Counter:
        """Number of failures per kind."""
        return Counter(kind for _, kind in self.failed)

    @property
    def failed_paths(self) -> list[Path]:
        return [path for path, _ in self.failed]

    def record_success(self, picture_id: str) -> None:
        self.added.append(picture_id)

    def record_failure(self, path: Path, kind: AddErrorKind) -> None:
        self.failed.append((path, kind))

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "added": list(self.added),
            "failed": [{"path": str(path), "kind": kind.name} for path, kind in self.failed],
            "failure_counts": {kind.name: count for kind, count in self.failure_counts.items()},
        }
