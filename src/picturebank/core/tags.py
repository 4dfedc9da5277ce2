"""Tag repository: the rooted tag tree of one bank.

The root tag (id 0) is synthetic: it lives only in memory, can't be
edited, attached or removed, and is the parent of every top-level tag.
Every change is persisted before the in-memory tree is touched, so a
failed operation leaves the repository unchanged.
"""

import logging
import threading
import unicodedata
from typing import Optional

from ..constants import MAX_TAG_ID, MAX_TAG_NAME_LENGTH, ROOT_TAG_ID, ROOT_TAG_NAME
from ..events import EventBus, TagChangedEvent
from ..exceptions import SqlError, TagError, TagErrorKind
from ..models import Tag
from ..storage.sqlite import PersistenceGateway

logger = logging.getLogger(__name__)

ROOT_TAG = Tag(
    tag_id=ROOT_TAG_ID,
    name=ROOT_TAG_NAME,
    description="",
    parent_id=ROOT_TAG_ID,
    selectable=False,
    editable=False,
)

NEXT_TAG_ID_KEY = "next_tag_id"


def normalize_tag_name(name: str) -> str:
    """Strip a tag name and check its lexical rules.

    Raises:
        TagError: MALFORMED_TAG_NAME if empty, too long or holding control characters
    """
    if not isinstance(name, str):
        raise TagError(TagErrorKind.MALFORMED_TAG_NAME, f"Tag name must be a string, got {name!r}")
    stripped = name.strip()
    if not stripped:
        raise TagError(TagErrorKind.MALFORMED_TAG_NAME, "Tag name is empty.")
    if len(stripped) > MAX_TAG_NAME_LENGTH:
        raise TagError(
            TagErrorKind.MALFORMED_TAG_NAME,
            f"Tag name longer than {MAX_TAG_NAME_LENGTH} characters.",
        )
    if any(unicodedata.category(c) == "Cc" for c in stripped):
        raise TagError(TagErrorKind.MALFORMED_TAG_NAME, "Tag name contains control characters.")
    return stripped


class TagRepository:
    """Tag tree of a bank, backed by the persistence gateway.

    Reads return immutable Tag values; all state is guarded by one lock.

    Example:
        >>> repo = TagRepository(gateway)
        >>> repo.load()
        >>> animals = repo.add_tag(None, "animals", selectable=False)
        >>> cat = repo.add_tag(animals, "cat")
        >>> repo.get_tag("cat").parent_id == animals.tag_id
        True
    """

    def __init__(self, gateway: PersistenceGateway, bus: Optional[EventBus] = None):
        self._gateway = gateway
        self._bus = bus
        self._lock = threading.RLock()
        self._by_id: dict[int, Tag] = {ROOT_TAG_ID: ROOT_TAG}
        self._by_name: dict[str, Tag] = {ROOT_TAG_NAME: ROOT_TAG}
        self._next_id = ROOT_TAG_ID + 1

    def load(self) -> None:
        """Load every stored tag and the id high-water mark.

        Tags whose parent is missing are attached to the root.

        Raises:
            SqlError: If the tags can't be read
        """
        tags = self._gateway.load_tags()
        stored_next = self._gateway.get_meta(NEXT_TAG_ID_KEY, ROOT_TAG_ID + 1)
        with self._lock:
            self._by_id = {ROOT_TAG_ID: ROOT_TAG}
            self._by_name = {ROOT_TAG_NAME: ROOT_TAG}
            for tag in tags:
                if tag.tag_id == ROOT_TAG_ID:
                    logger.warning("Ignoring stored tag using the root id")
                    continue
                self._by_id[tag.tag_id] = tag
            for tag in list(self._by_id.values()):
                if tag.is_root:
                    continue
                if tag.parent_id not in self._by_id or self._creates_cycle(tag.tag_id, tag.parent_id):
                    logger.warning(f"Tag {tag.tag_id} has an invalid parent {tag.parent_id}; attaching to root")
                    tag = Tag(tag.tag_id, tag.name, tag.description, ROOT_TAG_ID, tag.selectable)
                    self._by_id[tag.tag_id] = tag
                if tag.name in self._by_name:
                    logger.warning(f"Duplicate tag name '{tag.name}' (id {tag.tag_id})")
                else:
                    self._by_name[tag.name] = tag
            highest = max(self._by_id)
            self._next_id = max(stored_next, highest + 1)
        logger.debug(f"Loaded {len(tags)} tags, next id {self._next_id}")

    # =========================================================================
    # READS
    # =========================================================================

    def root(self) -> Tag:
        return ROOT_TAG

    def get_tag(self, key: "int | str") -> Optional[Tag]:
        """Look a tag up by id or by name."""
        with self._lock:
            if isinstance(key, str):
                return self._by_name.get(key.strip())
            return self._by_id.get(key)

    def has_tag_named(self, name: str) -> bool:
        with self._lock:
            return name.strip() in self._by_name

    def tag_set(self) -> frozenset[Tag]:
        """Every tag, the root included."""
        with self._lock:
            return frozenset(self._by_id.values())

    def children(self, tag: "Tag | int") -> list[Tag]:
        """Direct children of a tag, ordered by name."""
        tag_id = tag.tag_id if isinstance(tag, Tag) else tag
        with self._lock:
            return sorted(
                (t for t in self._by_id.values() if t.parent_id == tag_id and not t.is_root),
                key=lambda t: t.name,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    # =========================================================================
    # WRITES
    # =========================================================================

    def add_tag(
        self,
        parent: "Tag | int | None",
        name: str,
        description: str = "",
        selectable: bool = True,
    ) -> Tag:
        """Create a tag under a parent (None for a top-level tag).

        Raises:
            TagError: MALFORMED_TAG_NAME, DUPLICATE_TAG_NAME, ILLEGAL_TAG_ID
                (unknown parent), NO_MORE_IDS or SQL_INSERT_ERROR
        """
        name = normalize_tag_name(name)
        with self._lock:
            parent_id = self._resolve_parent(parent)
            if name in self._by_name:
                raise TagError(TagErrorKind.DUPLICATE_TAG_NAME, f"'{name}'")
            tag_id = self._next_id
            if tag_id > MAX_TAG_ID:
                raise TagError(TagErrorKind.NO_MORE_IDS)
            tag = Tag(
                tag_id=tag_id,
                name=name,
                description=description or "",
                parent_id=parent_id,
                selectable=selectable,
            )
            try:
                self._gateway.insert_tag(tag, next_tag_id=tag_id + 1)
            except SqlError as e:
                raise TagError(TagErrorKind.SQL_INSERT_ERROR, str(e)) from e
            self._next_id = tag_id + 1
            self._by_id[tag_id] = tag
            self._by_name[name] = tag
        logger.debug(f"Added tag {tag_id} '{name}' under {parent_id}")
        self._publish(TagChangedEvent(tag_id))
        return tag

    def edit_tag(
        self,
        tag_id: int,
        parent: "Tag | int | None",
        name: str,
        description: str = "",
        selectable: bool = True,
    ) -> Tag:
        """Replace the parent, name, description and selectability of a tag.

        Raises:
            TagError: UNEDITABLE_TAG (root), ILLEGAL_TAG_ID (unknown tag or
                parent, or a parent that would create a cycle),
                MALFORMED_TAG_NAME, DUPLICATE_TAG_NAME or SQL_INSERT_ERROR
        """
        with self._lock:
            current = self._by_id.get(tag_id)
            if current is None:
                raise TagError(TagErrorKind.ILLEGAL_TAG_ID, f"No tag with id {tag_id}.")
            if not current.editable or current.is_root:
                raise TagError(TagErrorKind.UNEDITABLE_TAG, f"'{current.name}'")
            name = normalize_tag_name(name)
            parent_id = self._resolve_parent(parent)
            if self._creates_cycle(tag_id, parent_id):
                raise TagError(
                    TagErrorKind.ILLEGAL_TAG_ID,
                    f"Tag {parent_id} can't become the parent of {tag_id}: cycle.",
                )
            other = self._by_name.get(name)
            if other is not None and other.tag_id != tag_id:
                raise TagError(TagErrorKind.DUPLICATE_TAG_NAME, f"'{name}'")
            tag = Tag(
                tag_id=tag_id,
                name=name,
                description=description or "",
                parent_id=parent_id,
                selectable=selectable,
            )
            try:
                self._gateway.update_tag(tag)
            except SqlError as e:
                raise TagError(TagErrorKind.SQL_INSERT_ERROR, str(e)) from e
            if self._by_name.get(current.name) is current:
                del self._by_name[current.name]
            self._by_id[tag_id] = tag
            self._by_name[name] = tag
        logger.debug(f"Edited tag {tag_id} '{name}'")
        self._publish(TagChangedEvent(tag_id))
        return tag

    def remove_tag(self, tag_id: int) -> Tag:
        """Delete a leaf tag and all its picture assignments.

        Raises:
            TagError: ILLEGAL_TAG_ID (root, unknown, or has children) or
                SQL_REMOVAL_ERROR
        """
        with self._lock:
            tag = self._by_id.get(tag_id)
            if tag is None or tag.is_root:
                raise TagError(TagErrorKind.ILLEGAL_TAG_ID, f"Tag {tag_id} can't be removed.")
            if any(t.parent_id == tag_id for t in self._by_id.values() if not t.is_root):
                raise TagError(TagErrorKind.ILLEGAL_TAG_ID, f"Tag '{tag.name}' has children.")
            try:
                self._gateway.delete_tag(tag_id)
            except SqlError as e:
                raise TagError(TagErrorKind.SQL_REMOVAL_ERROR, str(e)) from e
            del self._by_id[tag_id]
            if self._by_name.get(tag.name) is tag:
                del self._by_name[tag.name]
        logger.debug(f"Removed tag {tag_id} '{tag.name}'")
        self._publish(TagChangedEvent(tag_id, removed=True))
        return tag

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _resolve_parent(self, parent: "Tag | int | None") -> int:
        if parent is None:
            return ROOT_TAG_ID
        parent_id = parent.tag_id if isinstance(parent, Tag) else parent
        if parent_id not in self._by_id:
            raise TagError(TagErrorKind.ILLEGAL_TAG_ID, f"No parent tag with id {parent_id}.")
        return parent_id

    def _creates_cycle(self, tag_id: int, parent_id: int) -> bool:
        """True if ``parent_id`` is ``tag_id`` or one of its descendants."""
        seen = set()
        current = parent_id
        while current != ROOT_TAG_ID:
            if current == tag_id or current in seen:
                return True
            seen.add(current)
            node = self._by_id.get(current)
            if node is None:
                return False
            current = node.parent_id
        return tag_id == ROOT_TAG_ID

    def _publish(self, event: TagChangedEvent) -> None:
        if self._bus is not None:
            self._bus.publish(event)
