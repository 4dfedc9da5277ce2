"""Utility functions for picturebank.

This module contains:
- Config file management
- Picture file utilities (hashing, buckets)
"""

from .config import (
    PictureBankConfig,
    get_config_path,
    get_value,
    load_bank_configs,
    load_config,
    save_config,
    set_value,
)
from .image import bucket_path, compute_picture_id, is_supported_image, validate_source

__all__ = [
    "PictureBankConfig",
    "load_config",
    "save_config",
    "load_bank_configs",
    "get_value",
    "set_value",
    "get_config_path",
    "bucket_path",
    "compute_picture_id",
    "is_supported_image",
    "validate_source",
]
