"""Tests for picturebank.services.image_tools module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from picturebank.exceptions import ProcessError
from picturebank.services.image_tools import (
    ImageMagickTool,
    PillowTool,
    parse_identify_output,
    select_image_tool,
)


def _which_all(name):
    return {"identify": "/usr/bin/identify", "convert": "/usr/bin/convert"}.get(name)


class TestParseIdentifyOutput:
    """Test parsing of identify -format output."""

    def test_single_frame(self):
        """Test width, height and format are read."""
        info = parse_identify_output("640 480 JPEG\n", "cat.jpg")
        assert (info.width, info.height, info.format) == (640, 480, "JPEG")
        assert info.original_name == "cat.jpg"

    def test_first_frame_only(self):
        """Test multi-frame output uses the first line."""
        info = parse_identify_output("100 50 GIF\n90 40 GIF\n", "anim.gif")
        assert (info.width, info.height) == (100, 50)

    def test_empty_output(self):
        """Test empty output raises ProcessError."""
        with pytest.raises(ProcessError):
            parse_identify_output("", "x.jpg")

    def test_garbage_output(self):
        """Test unparseable output raises ProcessError."""
        with pytest.raises(ProcessError):
            parse_identify_output("wide tall\n", "x.jpg")

    def test_zero_dimensions(self):
        """Test zero dimensions are rejected."""
        with pytest.raises(ProcessError):
            parse_identify_output("0 480 JPEG", "x.jpg")


class TestImageMagickTool:
    """Test the ImageMagick backend with subprocess mocked."""

    def test_not_installed(self):
        """Test missing binaries raise ProcessError."""
        with patch("picturebank.services.image_tools.shutil.which", return_value=None):
            with pytest.raises(ProcessError):
                ImageMagickTool()

    def test_prefers_magick(self):
        """Test ImageMagick 7 uses the magick entry point."""
        with patch("picturebank.services.image_tools.shutil.which", return_value="/usr/bin/magick"):
            tool = ImageMagickTool()
        with patch("picturebank.services.image_tools.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="10 20 PNG\n", stderr="")
            info = tool.identify(Path("/tmp/a.png"))
        cmd = mock_run.call_args[0][0]
        assert cmd[:2] == ["/usr/bin/magick", "identify"]
        assert cmd[-1] == "/tmp/a.png[0]"
        assert (info.width, info.height) == (10, 20)

    def test_identify_failure(self):
        """Test a non-zero exit raises ProcessError."""
        with patch("picturebank.services.image_tools.shutil.which", side_effect=_which_all):
            tool = ImageMagickTool()
        with patch("picturebank.services.image_tools.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="no decode delegate")
            with pytest.raises(ProcessError, match="no decode delegate"):
                tool.identify(Path("/tmp/notes.txt"))

    def test_identify_timeout(self):
        """Test a timeout raises ProcessError."""
        with patch("picturebank.services.image_tools.shutil.which", side_effect=_which_all):
            tool = ImageMagickTool()
        with patch(
            "picturebank.services.image_tools.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="identify", timeout=60),
        ):
            with pytest.raises(ProcessError, match="timed out"):
                tool.identify(Path("/tmp/huge.tif"))

    def test_thumbnail_command(self, temp_dir):
        """Test convert is asked for a bounded JPEG thumbnail."""
        with patch("picturebank.services.image_tools.shutil.which", side_effect=_which_all):
            tool = ImageMagickTool()
        destination = temp_dir / "AA" / "thumb"

        def fake_run(cmd, **kwargs):
            # convert writes to the jpeg: target
            Path(cmd[-1].removeprefix("jpeg:")).write_bytes(b"jpeg")
            return MagicMock(returncode=0, stdout="", stderr="")

        with patch("picturebank.services.image_tools.subprocess.run", side_effect=fake_run) as mock_run:
            tool.make_thumbnail(Path("/tmp/a.jpg"), destination, 128)

        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "/usr/bin/convert"
        assert "128x128>" in cmd
        assert destination.read_bytes() == b"jpeg"
        assert list(destination.parent.iterdir()) == [destination]

    def test_thumbnail_failure_leaves_nothing(self, temp_dir):
        """Test a failed convert leaves no partial file."""
        with patch("picturebank.services.image_tools.shutil.which", side_effect=_which_all):
            tool = ImageMagickTool()
        destination = temp_dir / "AA" / "thumb"
        with patch("picturebank.services.image_tools.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="boom")
            with pytest.raises(ProcessError):
                tool.make_thumbnail(Path("/tmp/a.jpg"), destination, 128)
        assert list(destination.parent.iterdir()) == []


class TestPillowTool:
    """Test the Pillow backend on real files."""

    def test_identify_jpeg(self, test_image):
        """Test JPEG dimensions and format."""
        info = PillowTool().identify(test_image)
        assert (info.width, info.height) == (100, 80)
        assert info.format == "JPEG"
        assert info.original_name == "test_image.jpg"

    def test_identify_png(self, test_png):
        """Test PNG dimensions."""
        info = PillowTool().identify(test_png)
        assert (info.width, info.height) == (60, 120)

    def test_identify_not_an_image(self, corrupted_file):
        """Test non-images raise ProcessError."""
        with pytest.raises(ProcessError):
            PillowTool().identify(corrupted_file)

    def test_thumbnail(self, test_png, temp_dir):
        """Test thumbnail is an RGB JPEG within the bound, aspect kept."""
        destination = temp_dir / "thumbs" / "AB" / "ABCD"
        PillowTool().make_thumbnail(test_png, destination, 32)
        with Image.open(destination) as img:
            assert img.format == "JPEG"
            assert img.mode == "RGB"
            assert max(img.size) == 32
            assert img.size == (16, 32)

    def test_thumbnail_of_garbage(self, corrupted_file, temp_dir):
        """Test a broken source raises ProcessError."""
        with pytest.raises(ProcessError):
            PillowTool().make_thumbnail(corrupted_file, temp_dir / "t" / "x", 32)


class TestSelectImageTool:
    """Test backend selection."""

    def test_pillow(self):
        """Test explicit Pillow."""
        assert isinstance(select_image_tool("pillow"), PillowTool)

    def test_auto_without_imagemagick(self):
        """Test auto falls back to Pillow."""
        with patch("picturebank.services.image_tools.shutil.which", return_value=None):
            assert isinstance(select_image_tool("auto"), PillowTool)

    def test_auto_with_imagemagick(self):
        """Test auto prefers ImageMagick."""
        with patch("picturebank.services.image_tools.shutil.which", side_effect=_which_all):
            assert isinstance(select_image_tool("auto"), ImageMagickTool)

    def test_unknown(self):
        """Test unknown names raise ValueError."""
        with pytest.raises(ValueError):
            select_image_tool("gimp")
