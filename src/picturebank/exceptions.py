"""Custom exceptions for picturebank.

Each exception type represents a category of error.
Catch specific exceptions to handle errors appropriately.

Ingestion and tag edits report *why* they failed through a ``kind``
attribute, so callers aggregating many outcomes (directory imports, tag
editors) can switch on it instead of parsing messages.
"""

from enum import Enum


class PictureBankError(Exception):
    """Base exception for all picturebank errors."""

    pass


class ConfigError(PictureBankError):
    """Raised when configuration is invalid or missing."""

    pass


class AddErrorKind(str, Enum):
    """Reasons a picture could not be added to a bank."""

    CANT_READ = "The file can't be read."
    NOT_A_FILE = "The path isn't a regular file."
    NOT_A_DIRECTORY = "The path isn't a directory."
    FILE_NOT_FOUND = "The file can't be found."
    FILE_ALREADY_EXISTS = "The picture is already in the bank."
    IDENTIFY_EXECUTION_ERROR = "Error while identifying the picture."
    NO_SUCH_HASH_ALGORITHM = "The hash algorithm isn't available."
    COPY_ERROR = "Error while copying the picture into the bank."
    IO_ERROR = "I/O error while reading the picture."
    SQL_INSERT_ERROR = "SQL error during the insertion of the picture in the database."
    CORRUPT_INDEX_ERROR = "The index is corrupted."
    INDEX_ERROR = "Error while indexing the picture."

    @property
    def message(self) -> str:
        return self.value


class PictureAddError(PictureBankError):
    """Raised when a picture cannot be ingested.

    Attributes:
        kind: Why ingestion failed
        picture_id: Id of the picture when it was computed before the failure
    """

    def __init__(
        self,
        kind: AddErrorKind,
        picture_id: str | None = None,
        detail: str | None = None,
    ):
        self.kind = kind
        self.picture_id = picture_id
        message = kind.message
        if picture_id:
            message = f"{message} (id: {picture_id})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TagErrorKind(str, Enum):
    """Reasons a tag edit was refused."""

    DUPLICATE_TAG_NAME = "There is already a tag with this name."
    SQL_INSERT_ERROR = "SQL error during the insertion of the tag in the database."
    NO_MORE_IDS = "No more tag ids available."
    MALFORMED_TAG_NAME = "The tag name is malformed."
    UNEDITABLE_TAG = "The tag is uneditable."
    SQL_REMOVAL_ERROR = "SQL error during the removal of the tag from the database."
    ILLEGAL_TAG_ID = "The specified id isn't a valid tag id, or is root tag id."

    @property
    def message(self) -> str:
        return self.value


class TagError(PictureBankError):
    """Raised when a tag cannot be created, edited, removed or attached."""

    def __init__(self, kind: TagErrorKind, detail: str | None = None):
        self.kind = kind
        message = kind.message if detail is None else f"{kind.message} {detail}"
        super().__init__(message)


class SqlError(PictureBankError):
    """Raised when the SQL database rejects a statement."""

    pass


class PictureIndexError(PictureBankError):
    """Raised when the full-text index cannot be read or written."""

    pass


class CorruptIndexError(PictureIndexError):
    """Raised when the full-text index is corrupted and must be rebuilt."""

    pass


class ProcessError(PictureBankError):
    """Raised when the external image tool fails."""

    pass


class BrowserError(PictureBankError):
    """Raised when a browser cannot move in the requested direction."""

    pass


class NoPreviousError(BrowserError):
    """Raised by ``Browser.previous()`` at the head of the list."""

    pass


class NoNextError(BrowserError):
    """Raised by ``Browser.next()`` past the tail of the list."""

    pass


class NoOpenPictureBankError(PictureBankError):
    """Raised when an operation needs a selected bank and none is open."""

    pass


class ExecutionError(PictureBankError):
    """Raised when a picture cannot be loaded or a pool task fails."""

    pass
