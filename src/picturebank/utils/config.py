"""Configuration file management.

Config is stored in TOML format at:
- macOS/Linux: ~/.config/picturebank/config.toml
- Windows: %APPDATA%\\picturebank\\config.toml

The file holds defaults shared by every bank and one entry per bank:

    [defaults]
    write_delay_seconds = 10
    max_concurrent_identify = 2

    [[banks]]
    picture_bank_id = 1
    name = "family"
    db_path = "/data/family/bank.db"
    picture_root = "/data/family/pictures"
    thumbnail_root = "/data/family/thumbnails"
    index_dir = "/data/family/index"

Usage:
    config = load_config()
    banks = load_bank_configs(config)
    delay = get_value(config, "defaults.write_delay_seconds", 10)
"""

import platform
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import tomli_w

from ..constants import (
    APP_NAME,
    DEFAULT_DB_FILENAME,
    DEFAULT_INDEX_DIRNAME,
    DEFAULT_MAX_CONCURRENT_IDENTIFY,
    DEFAULT_MAX_CONCURRENT_OTHER,
    DEFAULT_PICTURE_DIRNAME,
    DEFAULT_THUMBNAIL_DIRNAME,
    DEFAULT_WRITE_DELAY_SECONDS,
    THUMBNAIL_SIZE,
)
from ..exceptions import ConfigError

IMAGE_TOOLS = ("auto", "imagemagick", "pillow")

_PATH_FIELDS = ("db_path", "picture_root", "thumbnail_root", "index_dir")


@dataclass(frozen=True, eq=False)
class PictureBankConfig:
    """Identity and tuning of one picture bank.

    Banks order by ``picture_bank_id``; the remaining fields don't take
    part in comparisons.
    """

    picture_bank_id: int
    db_path: Path = Path()
    picture_root: Path = Path()
    thumbnail_root: Path = Path()
    index_dir: Path = Path()
    name: str = ""
    write_delay_seconds: int = DEFAULT_WRITE_DELAY_SECONDS
    max_concurrent_identify: int = DEFAULT_MAX_CONCURRENT_IDENTIFY
    max_concurrent_other: int = DEFAULT_MAX_CONCURRENT_OTHER
    thumbnail_size: int = THUMBNAIL_SIZE
    image_tool: str = "auto"
    max_depth: Optional[int] = None
    cache_size: int = 0

    def __post_init__(self):
        for name in _PATH_FIELDS:
            object.__setattr__(self, name, Path(getattr(self, name)))
        if self.write_delay_seconds < 0:
            raise ConfigError(f"write_delay_seconds must be >= 0, got {self.write_delay_seconds}")
        if self.max_concurrent_identify < 1 or self.max_concurrent_other < 1:
            raise ConfigError("Concurrency caps must be at least 1")
        if self.thumbnail_size < 1:
            raise ConfigError(f"thumbnail_size must be positive, got {self.thumbnail_size}")
        if self.image_tool not in IMAGE_TOOLS:
            raise ConfigError(
                f"Unknown image_tool '{self.image_tool}'. Choose one of: {', '.join(IMAGE_TOOLS)}"
            )
        if self.max_depth is not None and self.max_depth < 0:
            raise ConfigError(f"max_depth must be >= 0, got {self.max_depth}")
        if self.cache_size < 0:
            raise ConfigError(f"cache_size must be >= 0, got {self.cache_size}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PictureBankConfig):
            return NotImplemented
        return self.picture_bank_id == other.picture_bank_id

    def __hash__(self) -> int:
        return hash(self.picture_bank_id)

    def __lt__(self, other: "PictureBankConfig") -> bool:
        return self.picture_bank_id < other.picture_bank_id

    @property
    def write_delay_ms(self) -> int:
        return self.write_delay_seconds * 1000

    @classmethod
    def in_directory(cls, base_dir: str | Path, picture_bank_id: int, **overrides) -> "PictureBankConfig":
        """Standard layout with every bank file under one directory."""
        base_dir = Path(base_dir)
        return cls(
            picture_bank_id=picture_bank_id,
            db_path=base_dir / DEFAULT_DB_FILENAME,
            picture_root=base_dir / DEFAULT_PICTURE_DIRNAME,
            thumbnail_root=base_dir / DEFAULT_THUMBNAIL_DIRNAME,
            index_dir=base_dir / DEFAULT_INDEX_DIRNAME,
            **overrides,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "PictureBankConfig":
        """Build a config from a TOML table. Unknown keys are ignored.

        Raises:
            ConfigError: If required keys are missing or values are invalid
        """
        known = {f.name for f in fields(cls)}
        missing = [key for key in ("picture_bank_id", *_PATH_FIELDS) if key not in data]
        if missing:
            raise ConfigError(f"Bank configuration missing keys: {', '.join(missing)}")
        values = {key: value for key, value in data.items() if key in known}
        try:
            values["picture_bank_id"] = int(values["picture_bank_id"])
            for key in _PATH_FIELDS:
                values[key] = Path(values[key]).expanduser()
            return cls(**values)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid bank configuration: {e}") from e

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in _PATH_FIELDS:
            data[key] = str(data[key])
        if data["max_depth"] is None:
            # TOML has no null
            del data["max_depth"]
        return data


def get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if platform.system() == "Windows":
        base = Path.home() / "AppData" / "Roaming"
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


def get_config_path() -> Path:
    """Get path to config file."""
    return get_config_dir() / "config.toml"


DEFAULT_CONFIG = {
    "defaults": {
        "write_delay_seconds": DEFAULT_WRITE_DELAY_SECONDS,
        "max_concurrent_identify": DEFAULT_MAX_CONCURRENT_IDENTIFY,
        "max_concurrent_other": DEFAULT_MAX_CONCURRENT_OTHER,
        "thumbnail_size": THUMBNAIL_SIZE,
        "image_tool": "auto",
    },
    "banks": [],
}


def load_config(config_path: Path | None = None) -> dict:
    """Load configuration from file.

    Creates default config if file doesn't exist.

    Returns:
        Dict with configuration values

    Raises:
        ConfigError: If config file is malformed
    """
    config_path = config_path or get_config_path()

    if not config_path.exists():
        save_config(DEFAULT_CONFIG, config_path)
        return {
            "defaults": dict(DEFAULT_CONFIG["defaults"]),
            "banks": [],
        }

    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config: {e}") from e


def save_config(config: dict, config_path: Path | None = None) -> None:
    """Save configuration to file.

    Args:
        config: Dict with configuration values
    """
    config_path = config_path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "wb") as f:
        tomli_w.dump(config, f)


def load_bank_configs(config: dict) -> list[PictureBankConfig]:
    """Build one PictureBankConfig per ``[[banks]]`` entry, defaults applied.

    Raises:
        ConfigError: If an entry is invalid or two banks share an id
    """
    defaults = get_value(config, "defaults", {})
    if not isinstance(defaults, dict):
        raise ConfigError("[defaults] must be a table")
    banks = []
    seen: set[int] = set()
    for entry in get_value(config, "banks", []):
        bank = PictureBankConfig.from_dict({**defaults, **entry})
        if bank.picture_bank_id in seen:
            raise ConfigError(f"Duplicate picture_bank_id {bank.picture_bank_id}")
        seen.add(bank.picture_bank_id)
        banks.append(bank)
    return sorted(banks)


def add_bank_config(config: dict, bank: PictureBankConfig) -> None:
    """Append or replace a bank entry in a config dict (modified in place)."""
    entries = [
        entry
        for entry in get_value(config, "banks", [])
        if entry.get("picture_bank_id") != bank.picture_bank_id
    ]
    entries.append(bank.to_dict())
    set_value(config, "banks", entries)


def get_value(config: dict, key: str, default: Any = None) -> Any:
    """Look up a dotted key such as ``"defaults.write_delay_seconds"``.

    Returns default when any table along the path is missing.
    """
    current: Any = config
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_value(config: dict, key: str, value: Any) -> None:
    """Store value under a dotted key, creating tables along the way.

    Raises:
        ConfigError: If a non-table value sits on the path
    """
    *tables, name = key.split(".")
    current = config
    for part in tables:
        current = current.setdefault(part, {})
        if not isinstance(current, dict):
            raise ConfigError(f"Cannot set {key}: {part} is not a table")
    current[name] = value
