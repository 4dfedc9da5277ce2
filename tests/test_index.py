"""Tests for the full-text picture index."""

import pytest

from picturebank.exceptions import CorruptIndexError, PictureIndexError
from picturebank.models import PictureState
from picturebank.storage.index import Indexer, PictureQuery


def make_state(picture_id, tags=(), grade=0, name="photo.jpg", added_ts=1_000, width=640, height=480):
    return PictureState(
        picture_id=picture_id,
        original_name=name,
        width=width,
        height=height,
        added_ts=added_ts,
        creation_ts=added_ts,
        modified_ts=added_ts,
        grade=grade,
        tags=frozenset(tags),
    )


@pytest.fixture
def indexer(temp_dir):
    index = Indexer(temp_dir / "index")
    yield index
    index.close()


@pytest.fixture
def populated(indexer):
    indexer.index_picture(make_state("A" * 64, tags={1, 2}, grade=5, name="beach_cat.jpg", added_ts=1_000))
    indexer.index_picture(make_state("B" * 64, tags={1}, grade=2, name="dog.png", added_ts=2_000, width=100))
    indexer.index_picture(make_state("C" * 64, tags={3}, grade=4, name="mountain.jpg", added_ts=3_000))
    return indexer


class TestPictureQuery:
    """Tests for query building."""

    def test_empty(self):
        """Test an empty query has no match expression."""
        assert PictureQuery().match_expression() is None
        assert PictureQuery().range_conditions() == ([], [])

    def test_tag_expressions(self):
        """Test all/any tag clauses."""
        query = PictureQuery(all_tags=(1, 2), any_tags=(3, 4))
        assert query.match_expression() == "tags:t1 AND tags:t2 AND (tags:t3 OR tags:t4)"

    def test_ranges(self):
        """Test numeric ranges become SQL conditions."""
        conditions, params = PictureQuery(min_grade=3, max_grade=5).range_conditions()
        assert conditions == ["d.grade >= ?", "d.grade <= ?"]
        assert params == [3, 5]


class TestIndexer:
    """Tests for indexing and searching."""

    def test_search_everything_in_added_order(self, populated):
        """Test no criteria returns every id by added_ts."""
        assert populated.search() == ["A" * 64, "B" * 64, "C" * 64]

    def test_search_all_tags(self, populated):
        """Test AND over tags."""
        assert populated.search(PictureQuery(all_tags=(1, 2))) == ["A" * 64]

    def test_search_any_tags(self, populated):
        """Test OR over tags."""
        assert set(populated.search(PictureQuery(any_tags=(2, 3)))) == {"A" * 64, "C" * 64}

    def test_search_grade_range(self, populated):
        """Test grade bounds are inclusive."""
        assert populated.search(PictureQuery(min_grade=4)) == ["A" * 64, "C" * 64]
        assert populated.search(PictureQuery(max_grade=2)) == ["B" * 64]

    def test_search_tags_and_range(self, populated):
        """Test full-text and range criteria combine."""
        assert populated.search(PictureQuery(all_tags=(1,), min_grade=3)) == ["A" * 64]

    def test_search_width_and_added(self, populated):
        """Test dimension and timestamp bounds."""
        assert populated.search(PictureQuery(min_width=200, added_after=2_000)) == ["C" * 64]

    def test_search_text(self, populated):
        """Test raw text matches file name tokens."""
        assert populated.search("mountain") == ["C" * 64]
        assert populated.search(PictureQuery(text="name:cat")) == ["A" * 64]

    def test_limit(self, populated):
        """Test limit caps the result."""
        assert len(populated.search(limit=2)) == 2
        assert populated.search(limit=0) == []

    def test_upsert_replaces_document(self, populated):
        """Test re-indexing replaces tags and grade."""
        populated.index_picture(make_state("A" * 64, tags={3}, grade=1))
        assert populated.search(PictureQuery(all_tags=(1, 2))) == []
        assert set(populated.search(PictureQuery(all_tags=(3,)))) == {"A" * 64, "C" * 64}
        assert populated.count() == 3

    def test_delete_picture(self, populated):
        """Test removing a document."""
        assert populated.delete_picture("B" * 64) is True
        assert populated.delete_picture("B" * 64) is False
        assert populated.search(PictureQuery(all_tags=(1,))) == ["A" * 64]

    def test_clear(self, populated):
        """Test clear drops every document."""
        populated.clear()
        assert populated.count() == 0
        assert populated.search() == []

    def test_index_all(self, indexer):
        """Test indexing a batch, including a generator, returns the count."""
        states = (make_state(c * 64, tags={7}, added_ts=1_000 + i) for i, c in enumerate("DEF"))
        assert indexer.index_all(states) == 3
        assert indexer.search(PictureQuery(all_tags=(7,))) == ["D" * 64, "E" * 64, "F" * 64]
        assert indexer.index_all([]) == 0

    def test_malformed_query(self, populated):
        """Test a bad FTS expression raises PictureIndexError."""
        with pytest.raises(PictureIndexError):
            populated.search('"unbalanced')

    def test_persistent(self, temp_dir):
        """Test documents survive close and reopen."""
        index = Indexer(temp_dir / "index")
        index.index_picture(make_state("A" * 64, tags={9}))
        index.close()
        index.close()

        reopened = Indexer(temp_dir / "index")
        try:
            assert reopened.search(PictureQuery(all_tags=(9,))) == ["A" * 64]
        finally:
            reopened.close()

    def test_closed_index(self, temp_dir):
        """Test a closed index raises PictureIndexError."""
        index = Indexer(temp_dir / "index")
        index.close()
        with pytest.raises(PictureIndexError):
            index.search()

    def test_corrupt_file(self, temp_dir):
        """Test a garbage index file raises CorruptIndexError."""
        index_dir = temp_dir / "index"
        index_dir.mkdir()
        (index_dir / "index.db").write_bytes(b"this is not a database at all" * 100)
        with pytest.raises(CorruptIndexError):
            Indexer(index_dir)
