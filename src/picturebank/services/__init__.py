"""Services module for picturebank.

Contains the image tool backends used to identify pictures and render
thumbnails (ImageMagick, Pillow).
"""

from picturebank.services.image_tools import (
    ImageMagickTool,
    ImageTool,
    PillowTool,
    select_image_tool,
)

__all__ = [
    "ImageTool",
    "ImageMagickTool",
    "PillowTool",
    "select_image_tool",
]
