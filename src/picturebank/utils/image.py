"""Picture file utilities.

Handles:
- Validating ingestion sources
- Computing content-derived picture ids (uppercase SHA-256 hex)
- Mapping ids to their bucket directory under a picture or thumbnail root
"""

import hashlib
import os
from pathlib import Path

from ..constants import (
    ALL_SUPPORTED_EXTENSIONS,
    BUCKET_COUNT,
    BUCKET_PREFIX_LENGTH,
    HASH_CHUNK_SIZE,
    PICTURE_ID_LENGTH,
)
from ..exceptions import AddErrorKind, PictureAddError


def is_supported_image(path: Path) -> bool:
    """Check if file has a known image extension.

    Args:
        path: Path to check

    Returns:
        True if the extension is a known image format
    """
    return path.suffix.lower() in ALL_SUPPORTED_EXTENSIONS


def validate_source(path: Path) -> None:
    """Validate that a file can be ingested.

    Args:
        path: Path to the candidate picture

    Raises:
        PictureAddError: FILE_NOT_FOUND, CANT_READ or NOT_A_FILE
    """
    if not path.exists():
        raise PictureAddError(AddErrorKind.FILE_NOT_FOUND, detail=str(path))

    if not os.access(path, os.R_OK):
        raise PictureAddError(AddErrorKind.CANT_READ, detail=str(path))

    if not path.is_file():
        raise PictureAddError(AddErrorKind.NOT_A_FILE, detail=str(path))


def compute_picture_id(path: Path) -> str:
    """Compute the picture id: uppercase hex SHA-256 of the file bytes.

    The file is streamed in HASH_CHUNK_SIZE chunks.

    Raises:
        PictureAddError: NO_SUCH_HASH_ALGORITHM, FILE_NOT_FOUND or IO_ERROR
    """
    try:
        sha256 = hashlib.new("sha256")
    except ValueError as e:
        raise PictureAddError(AddErrorKind.NO_SUCH_HASH_ALGORITHM) from e

    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                sha256.update(chunk)
    except FileNotFoundError as e:
        raise PictureAddError(AddErrorKind.FILE_NOT_FOUND, detail=str(path)) from e
    except OSError as e:
        raise PictureAddError(AddErrorKind.IO_ERROR, detail=str(e)) from e

    return sha256.hexdigest().upper()


def is_picture_id(value: str) -> bool:
    """Check that a string looks like a picture id."""
    if len(value) != PICTURE_ID_LENGTH:
        return False
    return all(c in "0123456789ABCDEF" for c in value)


def bucket_name(picture_id: str) -> str:
    """Bucket directory name for an id: its first two hex characters."""
    return picture_id[:BUCKET_PREFIX_LENGTH]


def bucket_names() -> list[str]:
    """All bucket directory names, 00 to FF."""
    return [f"{i:02X}" for i in range(BUCKET_COUNT)]


def bucket_path(root: Path, picture_id: str) -> Path:
    """``<root>/<id[0..2]>/<id>``."""
    return root / bucket_name(picture_id) / picture_id


def ensure_bucket_directories(root: Path) -> bool:
    """Create a root and its 256 bucket directories.

    Returns:
        True if every directory exists and is readable and writable
    """
    if not check_directory(root):
        return False
    ok = True
    for name in bucket_names():
        ok &= check_directory(root / name)
    return ok


def check_directory(directory: Path) -> bool:
    """Create a directory if needed, then check it's readable and writable."""
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return directory.is_dir() and os.access(directory, os.R_OK | os.W_OK)
