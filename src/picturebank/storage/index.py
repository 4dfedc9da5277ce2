"""Full-text picture index.

Backed by an SQLite FTS5 table in ``<index_dir>/index.db``. Each picture
is one document keyed by its id: tag ids as ``t<id>`` terms plus the
original file name, and a companion table carrying grade, dimensions and
timestamps for range queries.

Writes go through a writer connection under a lock. Searches use a
separate reader connection; in WAL mode they read the last committed
snapshot without waiting for writers.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from picturebank.constants import INDEX_DB_FILENAME
from picturebank.exceptions import CorruptIndexError, PictureIndexError
from picturebank.models import Picture, PictureState

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "CREATE TABLE IF NOT EXISTS picture_doc (\n"
    "    doc_id INTEGER PRIMARY KEY,\n"
    "    picture_id TEXT UNIQUE NOT NULL,\n"
    "    grade INTEGER NOT NULL,\n"
    "    width INTEGER NOT NULL,\n"
    "    height INTEGER NOT NULL,\n"
    "    added_ts INTEGER NOT NULL,\n"
    "    creation_ts INTEGER NOT NULL,\n"
    "    modified_ts INTEGER NOT NULL\n"
    ");",
    "CREATE VIRTUAL TABLE IF NOT EXISTS picture_fts USING fts5(\n"
    "    tags,\n"
    "    name,\n"
    "    tokenize=\"unicode61\"\n"
    ");",
]

# Messages sqlite uses for damaged files
_CORRUPTION_MARKERS = ("malformed", "not a database", "corrupt")


def tag_term(tag_id: int) -> str:
    """Index term for a tag id."""
    return f"t{int(tag_id)}"


@dataclass(frozen=True)
class PictureQuery:
    """Search criteria; every given criterion must hold.

    Attributes:
        text: Raw FTS5 expression matched against tags and names
        all_tags: Tag ids the picture must all carry
        any_tags: Tag ids of which the picture must carry at least one
        min_grade / max_grade: Inclusive grade range
        min_width / min_height: Minimum dimensions
        added_after / added_before: Inclusive added_ts range (ms epoch)
        modified_after: Inclusive lower bound on modified_ts (ms epoch)
    """

    text: Optional[str] = None
    all_tags: tuple[int, ...] = ()
    any_tags: tuple[int, ...] = ()
    min_grade: Optional[int] = None
    max_grade: Optional[int] = None
    min_width: Optional[int] = None
    min_height: Optional[int] = None
    added_after: Optional[int] = None
    added_before: Optional[int] = None
    modified_after: Optional[int] = None

    def match_expression(self) -> Optional[str]:
        """FTS5 MATCH expression, or None when no full-text criterion is set."""
        parts = []
        if self.text and self.text.strip():
            parts.append(f"({self.text.strip()})")
        parts.extend(f"tags:{tag_term(tag_id)}" for tag_id in self.all_tags)
        if self.any_tags:
            parts.append(
                "(" + " OR ".join(f"tags:{tag_term(tag_id)}" for tag_id in self.any_tags) + ")"
            )
        if not parts:
            return None
        return " AND ".join(parts)

    def range_conditions(self) -> tuple[list[str], list[int]]:
        """SQL conditions on the ``d`` (picture_doc) alias, with parameters."""
        bounds = [
            ("d.grade >= ?", self.min_grade),
            ("d.grade <= ?", self.max_grade),
            ("d.width >= ?", self.min_width),
            ("d.height >= ?", self.min_height),
            ("d.added_ts >= ?", self.added_after),
            ("d.added_ts <= ?", self.added_before),
            ("d.modified_ts >= ?", self.modified_after),
        ]
        conditions = [sql for sql, value in bounds if value is not None]
        params = [value for _, value in bounds if value is not None]
        return conditions, params


def _wrap(e: sqlite3.Error, action: str) -> PictureIndexError:
    message = str(e)
    if isinstance(e, sqlite3.DatabaseError) and any(
        marker in message.lower() for marker in _CORRUPTION_MARKERS
    ):
        return CorruptIndexError(f"{action}: {message}")
    return PictureIndexError(f"{action}: {message}")


class Indexer:
    """Write-through full-text index of a bank's pictures.

    Example:
        >>> indexer = Indexer("./index")
        >>> indexer.index_picture(picture)
        >>> indexer.search(PictureQuery(all_tags=(3,), min_grade=4), limit=20)
        ['559AEAD0...', ...]
    """

    def __init__(self, index_dir: str | Path):
        """Open (or create) the index in a directory.

        Raises:
            CorruptIndexError: If the index file is damaged
            PictureIndexError: If it can't be opened otherwise
        """
        self.index_dir = Path(index_dir)
        self.db_path = self.index_dir / INDEX_DB_FILENAME
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PictureIndexError(f"Cannot create index directory {self.index_dir}: {e}") from e
        self._writer: Optional[sqlite3.Connection] = None
        self._reader: Optional[sqlite3.Connection] = None
        try:
            self._writer = self._connect()
            for statement in SCHEMA_STATEMENTS:
                self._writer.execute(statement)
            self._reader = self._connect()
        except sqlite3.Error as e:
            self._close_connections()
            raise _wrap(e, f"Opening index {self.db_path}") from e

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _writer_conn(self) -> sqlite3.Connection:
        if self._writer is None:
            raise PictureIndexError(f"Index {self.db_path} is closed")
        return self._writer

    def _reader_conn(self) -> sqlite3.Connection:
        if self._reader is None:
            raise PictureIndexError(f"Index {self.db_path} is closed")
        return self._reader

    # =========================================================================
    # WRITES
    # =========================================================================

    def index_picture(self, picture: Picture | PictureState) -> None:
        """Add or replace the document of a picture.

        Raises:
            CorruptIndexError: If the index is damaged
            PictureIndexError: On any other write failure
        """
        state = picture.snapshot() if isinstance(picture, Picture) else picture
        tags = " ".join(tag_term(tag_id) for tag_id in sorted(state.tags))
        values = (
            state.grade,
            state.width,
            state.height,
            state.added_ts,
            state.creation_ts,
            state.modified_ts,
        )
        with self._write_lock:
            conn = self._writer_conn()
            try:
                conn.execute("BEGIN")
                try:
                    row = conn.execute(
                        "SELECT doc_id FROM picture_doc WHERE picture_id = ?",
                        (state.picture_id,),
                    ).fetchone()
                    if row is None:
                        cursor = conn.execute(
                            "INSERT INTO picture_doc (picture_id, grade, width, height, "
                            "added_ts, creation_ts, modified_ts) VALUES (?, ?, ?, ?, ?, ?, ?)",
                            (state.picture_id, *values),
                        )
                        doc_id = cursor.lastrowid
                    else:
                        doc_id = row["doc_id"]
                        conn.execute(
                            "UPDATE picture_doc SET grade = ?, width = ?, height = ?, "
                            "added_ts = ?, creation_ts = ?, modified_ts = ? WHERE doc_id = ?",
                            (*values, doc_id),
                        )
                        conn.execute("DELETE FROM picture_fts WHERE rowid = ?", (doc_id,))
                    conn.execute(
                        "INSERT INTO picture_fts (rowid, tags, name) VALUES (?, ?, ?)",
                        (doc_id, tags, state.original_name),
                    )
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise _wrap(e, f"Indexing {state.picture_id}") from e

    def delete_picture(self, picture_id: str) -> bool:
        """Remove a picture's document. Returns False if it wasn't indexed."""
        with self._write_lock:
            conn = self._writer_conn()
            try:
                row = conn.execute(
                    "SELECT doc_id FROM picture_doc WHERE picture_id = ?", (picture_id,)
                ).fetchone()
                if row is None:
                    return False
                conn.execute("BEGIN")
                conn.execute("DELETE FROM picture_fts WHERE rowid = ?", (row["doc_id"],))
                conn.execute("DELETE FROM picture_doc WHERE doc_id = ?", (row["doc_id"],))
                conn.execute("COMMIT")
                return True
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise _wrap(e, f"Removing {picture_id} from index") from e

    def clear(self) -> None:
        """Drop every document, before a full rebuild."""
        with self._write_lock:
            conn = self._writer_conn()
            try:
                conn.execute("BEGIN")
                conn.execute("DELETE FROM picture_fts")
                conn.execute("DELETE FROM picture_doc")
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise _wrap(e, "Clearing index") from e

    def index_all(self, pictures: Iterable[Picture | PictureState]) -> int:
        """Index many pictures. Returns how many were written."""
        count = 0
        for picture in pictures:
            self.index_picture(picture)
            count += 1
        return count

    # =========================================================================
    # READS
    # =========================================================================

    def search(self, query: "PictureQuery | str | None" = None, limit: Optional[int] = None) -> list[str]:
        """Ids of matching pictures.

        With a full-text criterion results come in FTS5 rank order,
        otherwise in the order pictures were added.

        Args:
            query: PictureQuery, a raw FTS5 expression, or None for everything
            limit: Maximum number of ids (None = no limit)

        Raises:
            PictureIndexError: On a malformed expression or read failure
        """
        if isinstance(query, str):
            query = PictureQuery(text=query)
        query = query or PictureQuery()
        match = query.match_expression()
        conditions, params = query.range_conditions()

        if match is not None:
            sql = (
                "SELECT d.picture_id FROM "
                "(SELECT rowid AS doc_id, rank AS score FROM picture_fts WHERE picture_fts MATCH ?) AS m "
                "JOIN picture_doc AS d ON d.doc_id = m.doc_id WHERE 1=1"
            )
            params = [match, *params]
            order = "ORDER BY m.score, d.added_ts, d.doc_id"
        else:
            sql = "SELECT d.picture_id FROM picture_doc AS d WHERE 1=1"
            order = "ORDER BY d.added_ts, d.doc_id"
        for condition in conditions:
            sql += f" AND {condition}"
        sql += f" {order} LIMIT ?"
        params.append(-1 if limit is None else max(limit, 0))

        with self._read_lock:
            try:
                rows = self._reader_conn().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise _wrap(e, "Searching index") from e
        return [row["picture_id"] for row in rows]

    def count(self) -> int:
        with self._read_lock:
            try:
                return self._reader_conn().execute("SELECT COUNT(*) FROM picture_doc").fetchone()[0]
            except sqlite3.Error as e:
                raise _wrap(e, "Counting index documents") from e

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def close(self) -> None:
        """Flush and release the index. Safe to call twice.

        Raises:
            PictureIndexError: If the checkpoint or close fails
        """
        with self._write_lock, self._read_lock:
            try:
                if self._writer is not None:
                    self._writer.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except sqlite3.Error as e:
                self._close_connections()
                raise _wrap(e, f"Closing index {self.db_path}") from e
            self._close_connections()

    def _close_connections(self) -> None:
        for conn in (self._reader, self._writer):
            if conn is not None:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.error(f"Closing index connection failed: {e}")
        self._reader = None
        self._writer = None
