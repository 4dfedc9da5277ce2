"""Tests for the SQLite persistence gateway."""

import sqlite3
from pathlib import Path

import pytest

from picturebank.exceptions import SqlError
from picturebank.models import PictureState, Tag
from picturebank.storage.sqlite import PersistenceGateway


def make_state(picture_id="A" * 64, grade=0, tags=(), modified_ts=1_000):
    return PictureState(
        picture_id=picture_id,
        original_name="cat.jpg",
        width=640,
        height=480,
        added_ts=1_000,
        creation_ts=1_000,
        modified_ts=modified_ts,
        grade=grade,
        tags=frozenset(tags),
    )


class TestSchema:
    """Tests for schema creation."""

    def test_tables_created(self, gateway):
        """Test the stable tables and columns exist."""
        conn = sqlite3.connect(gateway.db_path)
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        columns = {row[1] for row in conn.execute("PRAGMA table_info(picture)")}
        conn.close()
        assert {"tag", "picture", "picture_tag"} <= tables
        assert columns == {
            "id", "grade", "width", "height", "original_name",
            "creation_ts", "modified_ts", "added_ts", "path",
        }

    def test_create_tables_idempotent(self, gateway):
        """Test creating the schema twice is harmless."""
        gateway.create_tables()
        assert gateway.count_pictures() == 0

    def test_closed_gateway(self, temp_dir):
        """Test a closed gateway raises SqlError and closes twice safely."""
        db = PersistenceGateway(temp_dir / "x.db")
        db.create_tables()
        db.close()
        db.close()
        assert db.closed
        with pytest.raises(SqlError):
            db.count_pictures()


class TestTags:
    """Tests for tag statements."""

    def test_insert_and_load(self, gateway):
        """Test tags round-trip."""
        gateway.insert_tag(Tag(1, "animals", "all of them", 0, False), next_tag_id=2)
        gateway.insert_tag(Tag(2, "cat", "", 1, True), next_tag_id=3)
        assert gateway.load_tags() == [
            Tag(1, "animals", "all of them", 0, False),
            Tag(2, "cat", "", 1, True),
        ]
        assert gateway.get_meta("next_tag_id") == 3

    def test_legacy_root_parent(self, gateway):
        """Test parent -1 is read as the root."""
        gateway.insert_tag(Tag(1, "old", "", -1, True))
        assert gateway.load_tags()[0].parent_id == 0

    def test_duplicate_id(self, gateway):
        """Test inserting an existing id raises SqlError."""
        gateway.insert_tag(Tag(1, "a"))
        with pytest.raises(SqlError):
            gateway.insert_tag(Tag(1, "b"))

    def test_update_tag(self, gateway):
        """Test update replaces fields."""
        gateway.insert_tag(Tag(1, "a"))
        gateway.update_tag(Tag(1, "b", "desc", 0, False))
        assert gateway.load_tags() == [Tag(1, "b", "desc", 0, False)]

    def test_update_missing_tag(self, gateway):
        """Test updating an unknown tag raises SqlError."""
        with pytest.raises(SqlError):
            gateway.update_tag(Tag(9, "ghost"))

    def test_delete_tag_cascades(self, gateway):
        """Test deleting a tag removes its picture assignments."""
        gateway.insert_tag(Tag(1, "cat"))
        gateway.insert_picture(make_state(tags={1}), Path("/p"))
        gateway.delete_tag(1)
        assert gateway.load_tags() == []
        assert gateway.load_picture_tags("A" * 64) == []
        assert gateway.count_pictures_by_tag(1) == 0

    def test_meta_default(self, gateway):
        """Test missing meta keys return the default."""
        assert gateway.get_meta("missing", 7) == 7
        gateway.set_meta("missing", 8)
        gateway.set_meta("missing", 9)
        assert gateway.get_meta("missing") == 9


class TestPictures:
    """Tests for picture statements."""

    def test_insert_and_load(self, gateway):
        """Test a picture round-trips with its tags."""
        gateway.insert_tag(Tag(1, "cat"))
        state = make_state(grade=2, tags={1})
        gateway.insert_picture(state, Path("/pictures/AA/" + "A" * 64))
        assert gateway.load_picture("A" * 64) == state
        assert gateway.count_pictures() == 1

    def test_load_unknown(self, gateway):
        """Test unknown ids load as None."""
        assert gateway.load_picture("F" * 64) is None

    def test_duplicate_picture(self, gateway):
        """Test a second insert of one id raises SqlError."""
        gateway.insert_picture(make_state(), Path("/p"))
        with pytest.raises(SqlError):
            gateway.insert_picture(make_state(), Path("/p"))

    def test_update_picture(self, gateway):
        """Test grade, modified_ts and tags are replaced."""
        gateway.insert_tag(Tag(1, "cat"))
        gateway.insert_tag(Tag(2, "dog"))
        gateway.insert_picture(make_state(tags={1}), Path("/p"))
        gateway.update_picture(make_state(grade=5, tags={2}, modified_ts=2_000))
        loaded = gateway.load_picture("A" * 64)
        assert loaded.grade == 5
        assert loaded.modified_ts == 2_000
        assert loaded.tags == frozenset({2})

    def test_update_missing_picture(self, gateway):
        """Test updating an unknown picture raises SqlError."""
        with pytest.raises(SqlError):
            gateway.update_picture(make_state())

    def test_assignment_to_removed_tag_is_dropped(self, gateway):
        """Test picture_tag rows never reference missing tags."""
        gateway.insert_picture(make_state(tags={42}), Path("/p"))
        assert gateway.load_picture_tags("A" * 64) == []

    def test_ids_in_insertion_order(self, gateway):
        """Test ids come back in insertion order."""
        ids = ["C" * 64, "A" * 64, "B" * 64]
        for picture_id in ids:
            gateway.insert_picture(make_state(picture_id), Path("/p"))
        assert gateway.select_picture_ids() == ids

    def test_select_by_tag(self, gateway):
        """Test ids by tag and counts."""
        gateway.insert_tag(Tag(1, "cat"))
        gateway.insert_picture(make_state("A" * 64, tags={1}), Path("/p"))
        gateway.insert_picture(make_state("B" * 64), Path("/p"))
        gateway.insert_picture(make_state("C" * 64, tags={1}), Path("/p"))
        assert gateway.select_picture_ids_by_tag(1) == ["A" * 64, "C" * 64]
        assert gateway.count_pictures_by_tag(1) == 2

    def test_replace_picture_tags(self, gateway):
        """Test delete-then-insert of assignments."""
        gateway.insert_tag(Tag(1, "cat"))
        gateway.insert_tag(Tag(2, "dog"))
        gateway.insert_picture(make_state(tags={1}), Path("/p"))
        gateway.replace_picture_tags("A" * 64, {2})
        assert gateway.load_picture_tags("A" * 64) == [2]


class TestTransactions:
    """Tests for transaction grouping."""

    def test_rollback_on_error(self, gateway):
        """Test a failing block leaves nothing behind."""
        with pytest.raises(RuntimeError):
            with gateway.transaction():
                gateway.insert_picture(make_state(), Path("/p"))
                raise RuntimeError("index write failed")
        assert gateway.count_pictures() == 0

    def test_nested_failure_rolls_back_outer(self, gateway):
        """Test a caught nested failure still rolls back the outer block."""
        gateway.insert_picture(make_state("B" * 64), Path("/p"))
        with pytest.raises(SqlError):
            with gateway.transaction():
                gateway.insert_picture(make_state("A" * 64), Path("/p"))
                try:
                    gateway.insert_picture(make_state("B" * 64), Path("/p"))
                except SqlError:
                    pass
        assert gateway.select_picture_ids() == ["B" * 64]

    def test_commit(self, gateway):
        """Test a clean block commits."""
        with gateway.transaction():
            gateway.insert_picture(make_state(), Path("/p"))
        other = PersistenceGateway(gateway.db_path)
        try:
            assert other.count_pictures() == 1
        finally:
            other.close()
