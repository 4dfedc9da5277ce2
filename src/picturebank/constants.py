"""Application-wide constants.

Centralizes magic numbers and strings to avoid hardcoding throughout the codebase.
"""

from typing import Final

# =============================================================================
# VERSION AND METADATA
# =============================================================================

APP_NAME: Final[str] = "picturebank"

# =============================================================================
# PICTURE STORAGE
# =============================================================================

# Files are hashed in chunks of this size (bytes)
HASH_CHUNK_SIZE: Final[int] = 4096

# Length of an uppercase hex SHA-256 digest
PICTURE_ID_LENGTH: Final[int] = 64

# Number of hex characters used for the bucket directory name
BUCKET_PREFIX_LENGTH: Final[int] = 2

# 00..FF
BUCKET_COUNT: Final[int] = 256

# Default per-bank file layout (see PictureBankConfig.in_directory)
DEFAULT_DB_FILENAME: Final[str] = "bank.db"
DEFAULT_PICTURE_DIRNAME: Final[str] = "pictures"
DEFAULT_THUMBNAIL_DIRNAME: Final[str] = "thumbnails"
DEFAULT_INDEX_DIRNAME: Final[str] = "index"

# Index database file inside the index directory
INDEX_DB_FILENAME: Final[str] = "index.db"

# =============================================================================
# PICTURES
# =============================================================================

MIN_GRADE: Final[int] = 0
MAX_GRADE: Final[int] = 5

# =============================================================================
# THUMBNAILS
# =============================================================================

# Max side of generated thumbnails (pixels)
THUMBNAIL_SIZE: Final[int] = 128

JPEG_QUALITY_THUMBNAIL: Final[int] = 85

# =============================================================================
# TAGS
# =============================================================================

ROOT_TAG_ID: Final[int] = 0
ROOT_TAG_NAME: Final[str] = "root"

# Legacy databases store -1 as the parent of top-level tags
LEGACY_ROOT_PARENT_ID: Final[int] = -1

# Tag ids are allocated monotonically inside the signed 32-bit range
MAX_TAG_ID: Final[int] = 2**31 - 1

MAX_TAG_NAME_LENGTH: Final[int] = 256

# =============================================================================
# CONFIGURATION DEFAULTS
# =============================================================================

DEFAULT_WRITE_DELAY_SECONDS: Final[int] = 10
DEFAULT_MAX_CONCURRENT_IDENTIFY: Final[int] = 2
DEFAULT_MAX_CONCURRENT_OTHER: Final[int] = 2

# Subprocess timeouts for the external image tool (seconds)
IDENTIFY_TIMEOUT: Final[int] = 60
CONVERT_TIMEOUT: Final[int] = 120

# =============================================================================
# FILE HANDLING
# =============================================================================

# Used to pre-filter directory imports when requested; ingestion itself
# relies on the identify tool, not on the extension.
STANDARD_IMAGE_EXTENSIONS: Final[frozenset[str]] = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".tif",
})

HEIC_EXTENSIONS: Final[frozenset[str]] = frozenset({".heic", ".heif"})

RAW_EXTENSIONS: Final[frozenset[str]] = frozenset({
    ".arw",   # Sony
    ".cr2", ".cr3",  # Canon
    ".nef",   # Nikon
    ".dng",   # Adobe
    ".orf",   # Olympus
    ".rw2",   # Panasonic
    ".raf",   # Fujifilm
    ".pef",   # Pentax
    ".srw",   # Samsung
})

ALL_SUPPORTED_EXTENSIONS: Final[frozenset[str]] = (
    STANDARD_IMAGE_EXTENSIONS | HEIC_EXTENSIONS | RAW_EXTENSIONS
)
