"""Pytest configuration and fixtures."""

import tempfile
import threading
from pathlib import Path

import pytest
from PIL import Image

from picturebank.core.bank import PictureBank
from picturebank.exceptions import ProcessError
from picturebank.models import PictureInfo
from picturebank.services.image_tools import ImageTool
from picturebank.storage.sqlite import PersistenceGateway
from picturebank.utils.config import PictureBankConfig


class FakeImageTool(ImageTool):
    """Deterministic image tool: any file is a 640x480 picture.

    Files whose content starts with one of ``rejected`` fail to identify.
    Thumbnails are small marker files.
    """

    name = "fake"

    def __init__(self, rejected: tuple[bytes, ...] = (b"not an image",)):
        self.rejected = rejected
        self.identified: list[Path] = []
        self.thumbnails: list[Path] = []
        self.fail_thumbnails = False
        self._lock = threading.Lock()

    def identify(self, path: Path) -> PictureInfo:
        with self._lock:
            self.identified.append(path)
        content = path.read_bytes()
        if any(content.startswith(prefix) for prefix in self.rejected):
            raise ProcessError(f"{path.name}: no decode delegate")
        return PictureInfo(width=640, height=480, original_name=path.name, format="FAKE")

    def make_thumbnail(self, source: Path, destination: Path, size: int) -> None:
        if self.fail_thumbnails:
            raise ProcessError("convert failed")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"thumbnail of " + source.name.encode())
        with self._lock:
            self.thumbnails.append(destination)


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_image(temp_dir):
    """Create a temporary test image (JPEG)."""
    image_path = temp_dir / "test_image.jpg"
    img = Image.new("RGB", (100, 80), color="red")
    img.save(image_path, "JPEG")
    return image_path


@pytest.fixture
def test_png(temp_dir):
    """Create a temporary test image (PNG)."""
    image_path = temp_dir / "test_image.png"
    img = Image.new("RGBA", (60, 120), color=(0, 0, 255, 128))
    img.save(image_path, "PNG")
    return image_path


@pytest.fixture
def test_images(temp_dir):
    """Create multiple distinct test images."""
    source_dir = temp_dir / "source"
    source_dir.mkdir()
    images = []
    for i in range(5):
        image_path = source_dir / f"test_{i}.jpg"
        img = Image.new("RGB", (100, 100), color=(i * 50, 0, 0))
        img.save(image_path, "JPEG")
        images.append(image_path)
    return images


@pytest.fixture
def corrupted_file(temp_dir):
    """Create a file that looks like an image but isn't."""
    file_path = temp_dir / "corrupted.jpg"
    file_path.write_bytes(b"not an image file")
    return file_path


@pytest.fixture
def fake_tool():
    return FakeImageTool()


@pytest.fixture
def bank_config(temp_dir):
    """Standard bank layout under the temp directory, writes without delay."""
    return PictureBankConfig.in_directory(temp_dir / "bank", 1, name="test", write_delay_seconds=0)


@pytest.fixture
def bank(bank_config, fake_tool):
    """Open bank backed by the fake image tool."""
    picture_bank = PictureBank(bank_config, tool=fake_tool)
    yield picture_bank
    picture_bank.close()


@pytest.fixture
def gateway(temp_dir):
    """Persistence gateway with the schema created."""
    db = PersistenceGateway(temp_dir / "gateway.db")
    db.create_tables()
    yield db
    db.close()


@pytest.fixture
def make_file(temp_dir):
    """Factory writing a file with given bytes under the temp directory."""

    def _make(name: str, content: bytes, subdir: str = "source") -> Path:
        directory = temp_dir / subdir
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(content)
        return path

    return _make
