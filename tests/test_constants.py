"""Tests for picturebank.constants module."""


class TestConstants:
    """Test application constants."""

    def test_grade_bounds(self):
        """Test grade bounds are valid."""
        from picturebank.constants import MAX_GRADE, MIN_GRADE

        assert (MIN_GRADE, MAX_GRADE) == (0, 5)

    def test_bucket_layout(self):
        """Test buckets cover every two-hex-digit prefix."""
        from picturebank.constants import BUCKET_COUNT, BUCKET_PREFIX_LENGTH, PICTURE_ID_LENGTH

        assert BUCKET_COUNT == 16**BUCKET_PREFIX_LENGTH
        assert PICTURE_ID_LENGTH == 64

    def test_tag_limits(self):
        """Test tag id space and root id."""
        from picturebank.constants import LEGACY_ROOT_PARENT_ID, MAX_TAG_ID, ROOT_TAG_ID

        assert ROOT_TAG_ID == 0
        assert LEGACY_ROOT_PARENT_ID < ROOT_TAG_ID
        assert MAX_TAG_ID == 2**31 - 1

    def test_config_defaults(self):
        """Test default tuning values are usable."""
        from picturebank.constants import (
            DEFAULT_MAX_CONCURRENT_IDENTIFY,
            DEFAULT_MAX_CONCURRENT_OTHER,
            DEFAULT_WRITE_DELAY_SECONDS,
            THUMBNAIL_SIZE,
        )

        assert DEFAULT_WRITE_DELAY_SECONDS == 10
        assert DEFAULT_MAX_CONCURRENT_IDENTIFY >= 1
        assert DEFAULT_MAX_CONCURRENT_OTHER >= 1
        assert THUMBNAIL_SIZE > 0

    def test_extension_sets(self):
        """Test extension sets are lowercase, dotted and disjoint."""
        from picturebank.constants import (
            ALL_SUPPORTED_EXTENSIONS,
            HEIC_EXTENSIONS,
            RAW_EXTENSIONS,
            STANDARD_IMAGE_EXTENSIONS,
        )

        assert isinstance(ALL_SUPPORTED_EXTENSIONS, frozenset)
        assert not STANDARD_IMAGE_EXTENSIONS & RAW_EXTENSIONS
        assert ALL_SUPPORTED_EXTENSIONS == STANDARD_IMAGE_EXTENSIONS | HEIC_EXTENSIONS | RAW_EXTENSIONS
        for ext in ALL_SUPPORTED_EXTENSIONS:
            assert ext.startswith(".")
            assert ext == ext.lower()
