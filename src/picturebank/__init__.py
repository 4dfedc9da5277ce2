"""picturebank - Content-addressed picture bank.

Stores pictures under the SHA-256 of their bytes, keeps metadata in
SQLite, a hierarchical tag vocabulary, and a full-text index for
filtered browsing.

Example:
    >>> from picturebank import PictureBank, PictureBankConfig
    >>> bank = PictureBank(PictureBankConfig.in_directory("./family", 1))
    >>> picture_id = bank.add_picture("IMG_0001.jpg")
    >>> cat = bank.add_tag(None, "cat")
    >>> bank.get_picture(picture_id).add_tag(cat)
    >>> bank.close()
"""

from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from picturebank.core.bank import PictureBank, pick_random
from picturebank.core.browser import Browser
from picturebank.core.registry import BankRegistry
from picturebank.events import (
    BankListChangedEvent,
    EventBus,
    PictureAddedEvent,
    PictureChangedEvent,
    TagChangedEvent,
)
from picturebank.exceptions import (
    AddErrorKind,
    PictureAddError,
    PictureBankError,
    TagError,
    TagErrorKind,
)
from picturebank.models import AddResult, Picture, PictureInfo, Tag
from picturebank.storage.index import PictureQuery
from picturebank.utils.config import PictureBankConfig


def _get_version() -> str:
    """Get version from package metadata or VERSION file."""
    # Try installed package metadata first (works when installed)
    try:
        return version("picture-bank")
    except PackageNotFoundError:
        pass

    # Fall back to VERSION file (works in development)
    version_file = Path(__file__).parent.parent.parent / "VERSION"
    if version_file.exists():
        return version_file.read_text().strip()

    return "0.0.0"


__version__ = _get_version()

__all__ = [
    "PictureBank",
    "PictureBankConfig",
    "BankRegistry",
    "Browser",
    "PictureQuery",
    "pick_random",
    # Models
    "AddResult",
    "Picture",
    "PictureInfo",
    "Tag",
    # Events
    "EventBus",
    "PictureAddedEvent",
    "PictureChangedEvent",
    "TagChangedEvent",
    "BankListChangedEvent",
    # Errors
    "PictureBankError",
    "PictureAddError",
    "AddErrorKind",
    "TagError",
    "TagErrorKind",
]
