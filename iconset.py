#!/usr/bin/env python3
"""iconset.py

Provides functional tools to turn a raster image into a macOS .icns file

- iconset_entries() lists the file names and pixel sizes of an .iconset
- find_resize_tool() picks the image resize utility available on PATH
- resize_command() / pack_command() build the external tool invocations

Nothing here touches pixels: resizing is done by ImageMagick or sips and
packing by iconutil.
"""
import shutil
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

Pathlike = Union[Path, str]

ICON_SIZES = (16, 32, 64, 128, 256, 512)

RASTER_EXTENSIONS = (".png", ".jpg", ".jpeg")

# in order of preference
RESIZE_TOOLS = ("magick", "convert", "sips")


def is_raster_image(path: Pathlike) -> bool:
    """True if the file extension names a raster image that needs packing."""
    return Path(path).suffix.lower() in RASTER_EXTENSIONS


def iconset_entries() -> Iterator[tuple[str, int]]:
    """Yield (filename, pixels) for every image an .iconset must contain.

    Each size comes with its @2x variant, e.g. ``icon_16x16.png`` (16px)
    and ``icon_16x16@2x.png`` (32px).
    """
    for size in ICON_SIZES:
        yield f"icon_{size}x{size}.png", size
        yield f"icon_{size}x{size}@2x.png", size * 2


def find_resize_tool(
    which: Callable[[str], Optional[str]] = shutil.which
) -> Optional[str]:
    """Return the first available resize tool name, or None."""
    for tool in RESIZE_TOOLS:
        if which(tool):
            return tool
    return None


def resize_command(
    tool: str, source: Pathlike, dest: Pathlike, pixels: int
) -> list[str]:
    """Build the command that renders `source` as a square `pixels` image."""
    if tool == "sips":
        return [
            "sips",
            "-z",
            str(pixels),
            str(pixels),
            str(source),
            "--out",
            str(dest),
        ]
    if tool in ("magick", "convert"):
        return [tool, str(source), "-resize", f"{pixels}x{pixels}", str(dest)]
    raise ValueError(f"unsupported resize tool: {tool}")


def pack_command(iconset_dir: Pathlike, output: Pathlike) -> list[str]:
    """Build the iconutil command that packs an .iconset into an .icns."""
    return ["iconutil", "-c", "icns", str(iconset_dir), "-o", str(output)]
