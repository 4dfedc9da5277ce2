"""Tests for custom exceptions."""

import pytest

from picturebank.exceptions import (
    AddErrorKind,
    BrowserError,
    ConfigError,
    CorruptIndexError,
    ExecutionError,
    NoNextError,
    NoOpenPictureBankError,
    NoPreviousError,
    PictureAddError,
    PictureBankError,
    PictureIndexError,
    ProcessError,
    SqlError,
    TagError,
    TagErrorKind,
)


class TestExceptionHierarchy:
    """Tests for exception class hierarchy."""

    def test_base_is_exception(self):
        """Test PictureBankError inherits from Exception."""
        assert issubclass(PictureBankError, Exception)

    @pytest.mark.parametrize(
        "error_class",
        [
            ConfigError,
            PictureAddError,
            TagError,
            SqlError,
            PictureIndexError,
            ProcessError,
            BrowserError,
            NoOpenPictureBankError,
            ExecutionError,
        ],
    )
    def test_inherits_from_base(self, error_class):
        """Test every error inherits from PictureBankError."""
        assert issubclass(error_class, PictureBankError)

    def test_corrupt_index_is_index_error(self):
        """Test CorruptIndexError can be caught as PictureIndexError."""
        assert issubclass(CorruptIndexError, PictureIndexError)

    def test_browser_errors(self):
        """Test navigation errors share BrowserError."""
        assert issubclass(NoNextError, BrowserError)
        assert issubclass(NoPreviousError, BrowserError)


class TestPictureAddError:
    """Tests for ingestion errors."""

    def test_kind_and_message(self):
        """Test message comes from the kind."""
        error = PictureAddError(AddErrorKind.CANT_READ)
        assert error.kind is AddErrorKind.CANT_READ
        assert error.picture_id is None
        assert str(error) == AddErrorKind.CANT_READ.message

    def test_carries_picture_id(self):
        """Test FILE_ALREADY_EXISTS carries the duplicate id."""
        error = PictureAddError(AddErrorKind.FILE_ALREADY_EXISTS, "ABC123", "/tmp/a.jpg")
        assert error.picture_id == "ABC123"
        assert "ABC123" in str(error)
        assert "/tmp/a.jpg" in str(error)

    def test_every_kind_has_message(self):
        """Test every kind has a non-empty message."""
        for kind in AddErrorKind:
            assert kind.message

    def test_can_raise_and_catch(self):
        """Test PictureAddError can be caught as the base error."""
        with pytest.raises(PictureBankError):
            raise PictureAddError(AddErrorKind.COPY_ERROR)


class TestTagError:
    """Tests for tag errors."""

    def test_kind_and_detail(self):
        """Test detail is appended to the kind message."""
        error = TagError(TagErrorKind.DUPLICATE_TAG_NAME, "'cat'")
        assert error.kind is TagErrorKind.DUPLICATE_TAG_NAME
        assert str(error).startswith(TagErrorKind.DUPLICATE_TAG_NAME.message)
        assert "'cat'" in str(error)

    def test_without_detail(self):
        """Test message is the kind message."""
        error = TagError(TagErrorKind.NO_MORE_IDS)
        assert str(error) == TagErrorKind.NO_MORE_IDS.message
