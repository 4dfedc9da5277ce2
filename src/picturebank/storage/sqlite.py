"""SQLite persistence gateway for a picture bank.

One connection per bank, serialized by an internal lock. Statements are
kept by name in ``STATEMENTS`` and never built ad hoc; sqlite3 caches the
prepared form per connection. Writes touching several rows run in one
transaction (see ``transaction()``).

Column names are a stable contract: other tools read bank databases
directly.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from picturebank.constants import LEGACY_ROOT_PARENT_ID, ROOT_TAG_ID
from picturebank.exceptions import SqlError
from picturebank.models import PictureState, Tag

logger = logging.getLogger(__name__)

# SQL schema
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tag (
    id              INTEGER PRIMARY KEY,
    name            TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    parent_id       INTEGER NOT NULL DEFAULT 0,
    selectable      BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS picture (
    id              TEXT PRIMARY KEY,
    grade           INTEGER NOT NULL DEFAULT 0,
    width           INTEGER NOT NULL,
    height          INTEGER NOT NULL,
    original_name   TEXT NOT NULL,
    creation_ts     INTEGER NOT NULL,
    modified_ts     INTEGER NOT NULL,
    added_ts        INTEGER NOT NULL,
    path            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS picture_tag (
    tag_id          INTEGER NOT NULL,
    picture_id      TEXT NOT NULL,
    PRIMARY KEY (tag_id, picture_id)
);

CREATE INDEX IF NOT EXISTS idx_picture_tag_picture ON picture_tag(picture_id);

-- Bank-level counters (tag id high-water mark)
CREATE TABLE IF NOT EXISTS bank_meta (
    key             TEXT PRIMARY KEY,
    value           INTEGER NOT NULL
);
"""

_PICTURE_COLUMNS = (
    "id, grade, width, height, original_name, creation_ts, modified_ts, added_ts, path"
)

STATEMENTS: dict[str, str] = {
    # tags
    "insert_tag": (
        "INSERT INTO tag (id, name, description, parent_id, selectable) VALUES (?, ?, ?, ?, ?)"
    ),
    "update_tag": (
        "UPDATE tag SET name = ?, description = ?, parent_id = ?, selectable = ? WHERE id = ?"
    ),
    "delete_tag": "DELETE FROM tag WHERE id = ?",
    "delete_tag_assignments": "DELETE FROM picture_tag WHERE tag_id = ?",
    "load_tags": "SELECT id, name, description, parent_id, selectable FROM tag ORDER BY id",
    # pictures
    "insert_picture": f"INSERT INTO picture ({_PICTURE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
    "update_picture": "UPDATE picture SET grade = ?, modified_ts = ? WHERE id = ?",
    "load_picture": f"SELECT {_PICTURE_COLUMNS} FROM picture WHERE id = ?",
    "select_picture_ids": "SELECT id FROM picture ORDER BY rowid",
    "count_pictures": "SELECT COUNT(id) FROM picture",
    # picture/tag assignments
    "delete_picture_tags": "DELETE FROM picture_tag WHERE picture_id = ?",
    # the tag must still exist; a concurrently removed tag is dropped
    "insert_picture_tag": (
        "INSERT OR IGNORE INTO picture_tag (tag_id, picture_id) "
        "SELECT ?, ? WHERE EXISTS (SELECT 1 FROM tag WHERE id = ?)"
    ),
    "load_picture_tags": "SELECT tag_id FROM picture_tag WHERE picture_id = ? ORDER BY tag_id",
    "count_pictures_by_tag": "SELECT COUNT(picture_id) FROM picture_tag WHERE tag_id = ?",
    "select_picture_ids_by_tag": (
        "SELECT picture_tag.picture_id FROM picture_tag "
        "JOIN picture ON picture.id = picture_tag.picture_id "
        "WHERE picture_tag.tag_id = ? ORDER BY picture.rowid"
    ),
    # meta
    "get_meta": "SELECT value FROM bank_meta WHERE key = ?",
    "set_meta": (
        "INSERT INTO bank_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value"
    ),
}


class PersistenceGateway:
    """Prepared-statement layer over a bank's SQLite file.

    Every public method raises ``SqlError`` when the database rejects a
    statement; nothing is retried.

    Example:
        >>> gateway = PersistenceGateway("./bank.db")
        >>> gateway.create_tables()
        >>> gateway.count_pictures()
        0
    """

    def __init__(self, db_path: str | Path):
        """Open the database file (created if missing).

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # autocommit mode; transactions are explicit
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
            )
        except (OSError, sqlite3.Error) as e:
            raise SqlError(f"Cannot open database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row

    # =========================================================================
    # CONNECTION
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._conn is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise SqlError(f"Database {self.db_path} is closed")
        return self._conn

    def _execute(self, name: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run a named statement."""
        with self._lock:
            try:
                return self._connection().execute(STATEMENTS[name], params)
            except sqlite3.Error as e:
                raise SqlError(f"{name} failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator["PersistenceGateway"]:
        """Group writes in one transaction.

        Nested use joins the outermost transaction. If any nested block
        fails, the outermost block rolls everything back even when the
        failure was caught in between.
        """
        with self._lock:
            conn = self._connection()
            if self._depth == 0:
                try:
                    conn.execute("BEGIN")
                except sqlite3.Error as e:
                    raise SqlError(f"BEGIN failed: {e}") from e
                self._rollback_only = False
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._rollback(conn)
                else:
                    self._rollback_only = True
                raise
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._rollback(conn)
                    raise SqlError("Transaction rolled back after a nested failure")
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback(conn)
                    raise SqlError(f"COMMIT failed: {e}") from e

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"ROLLBACK failed on {self.db_path}: {e}")

    def create_tables(self) -> None:
        """Create the schema if absent."""
        with self._lock:
            try:
                self._connection().executescript(SCHEMA_SQL)
            except sqlite3.Error as e:
                raise SqlError(f"Schema creation failed: {e}") from e

    def close(self) -> None:
        """Close the connection. Safe to call twice."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            except sqlite3.Error as e:
                raise SqlError(f"Closing {self.db_path} failed: {e}") from e
            finally:
                self._conn = None

    # =========================================================================
    # TAG OPERATIONS
    # =========================================================================

    def load_tags(self) -> list[Tag]:
        """Load every stored tag (the synthetic root isn't stored)."""
        rows = self._execute("load_tags").fetchall()
        return [self._row_to_tag(row) for row in rows]

    def insert_tag(self, tag: Tag, next_tag_id: Optional[int] = None) -> None:
        """Insert a tag, optionally advancing the id high-water mark atomically."""
        with self.transaction():
            self._execute(
                "insert_tag",
                (tag.tag_id, tag.name, tag.description, tag.parent_id, tag.selectable),
            )
            if next_tag_id is not None:
                self._execute("set_meta", ("next_tag_id", next_tag_id))

    def update_tag(self, tag: Tag) -> None:
        cursor = self._execute(
            "update_tag",
            (tag.name, tag.description, tag.parent_id, tag.selectable, tag.tag_id),
        )
        if cursor.rowcount == 0:
            raise SqlError(f"No tag with id {tag.tag_id}")

    def delete_tag(self, tag_id: int) -> None:
        """Delete a tag and every picture assignment of it."""
        with self.transaction():
            self._execute("delete_tag_assignments", (tag_id,))
            self._execute("delete_tag", (tag_id,))

    def get_meta(self, key: str, default: Optional[int] = None) -> Optional[int]:
        row = self._execute("get_meta", (key,)).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: int) -> None:
        self._execute("set_meta", (key, value))

    # =========================================================================
    # PICTURE OPERATIONS
    # =========================================================================

    def insert_picture(self, picture: PictureState, path: Path) -> None:
        """Insert a picture row and its tag rows."""
        with self.transaction():
            self._execute(
                "insert_picture",
                (
                    picture.picture_id,
                    picture.grade,
                    picture.width,
                    picture.height,
                    picture.original_name,
                    picture.creation_ts,
                    picture.modified_ts,
                    picture.added_ts,
                    str(path),
                ),
            )
            self._insert_picture_tags(picture.picture_id, picture.tags)

    def update_picture(self, picture: PictureState) -> None:
        """Write grade, modified_ts and tags of a picture."""
        with self.transaction():
            cursor = self._execute(
                "update_picture",
                (picture.grade, picture.modified_ts, picture.picture_id),
            )
            if cursor.rowcount == 0:
                raise SqlError(f"No picture with id {picture.picture_id}")
            self._execute("delete_picture_tags", (picture.picture_id,))
            self._insert_picture_tags(picture.picture_id, picture.tags)

    def replace_picture_tags(self, picture_id: str, tag_ids: set[int] | frozenset[int]) -> None:
        """Delete-then-insert the tag assignments of one picture."""
        with self.transaction():
            self._execute("delete_picture_tags", (picture_id,))
            self._insert_picture_tags(picture_id, tag_ids)

    def _insert_picture_tags(self, picture_id: str, tag_ids) -> None:
        for tag_id in sorted(tag_ids):
            self._execute("insert_picture_tag", (tag_id, picture_id, tag_id))

    def load_picture(self, picture_id: str) -> Optional[PictureState]:
        """Load a picture row with its tags, or None if unknown."""
        with self._lock:
            row = self._execute("load_picture", (picture_id,)).fetchone()
            if row is None:
                return None
            tags = self.load_picture_tags(picture_id)
        return self._row_to_picture(row, tags)

    def load_picture_tags(self, picture_id: str) -> list[int]:
        rows = self._execute("load_picture_tags", (picture_id,)).fetchall()
        return [row["tag_id"] for row in rows]

    def select_picture_ids(self) -> list[str]:
        """Every picture id, in insertion order."""
        return [row["id"] for row in self._execute("select_picture_ids").fetchall()]

    def select_picture_ids_by_tag(self, tag_id: int) -> list[str]:
        rows = self._execute("select_picture_ids_by_tag", (tag_id,)).fetchall()
        return [row["picture_id"] for row in rows]

    def count_pictures(self) -> int:
        return self._execute("count_pictures").fetchone()[0]

    def count_pictures_by_tag(self, tag_id: int) -> int:
        return self._execute("count_pictures_by_tag", (tag_id,)).fetchone()[0]

    # =========================================================================
    # ROW CONVERSION
    # =========================================================================

    @staticmethod
    def _row_to_tag(row: sqlite3.Row) -> Tag:
        parent_id = row["parent_id"]
        if parent_id is None or parent_id == LEGACY_ROOT_PARENT_ID:
            parent_id = ROOT_TAG_ID
        return Tag(
            tag_id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            parent_id=parent_id,
            selectable=bool(row["selectable"]),
        )

    @staticmethod
    def _row_to_picture(row: sqlite3.Row, tags: list[int]) -> PictureState:
        return PictureState(
            picture_id=row["id"],
            original_name=row["original_name"],
            width=row["width"],
            height=row["height"],
            added_ts=row["added_ts"],
            creation_ts=row["creation_ts"],
            modified_ts=row["modified_ts"],
            grade=row["grade"],
            tags=frozenset(tags),
        )

