# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Read and write image files with Pillow."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image

from spcn.cache import SourceImage

PathLike = Union[str, "os.PathLike[str]"]


def read_image(path: PathLike) -> SourceImage:
    """Load an image file as a cacheable :class:`~spcn.cache.SourceImage`.

    The resolved path is the identity and the file's modification time (in
    nanoseconds) the timestamp, so rewriting the file invalidates cached
    factorizations.  Palette images are expanded to RGB(A).

    :param path: Image file.
    :type path: str | os.PathLike
    :return: pixels with identity and timestamp
    :rtype: SourceImage
    """
    path = Path(path).resolve()
    with Image.open(path) as im:
        if im.mode == "P":
            im = im.convert("RGBA" if "transparency" in im.info else "RGB")
        elif im.mode in ("1", "CMYK", "YCbCr", "LAB", "HSV"):
            im = im.convert("RGB")
        pixels = np.array(im)
    return SourceImage(pixels, identity=str(path), timestamp=path.stat().st_mtime_ns)


def write_image(path: PathLike, image: np.ndarray | SourceImage) -> Path:
    """Write *image* to *path*; the format follows the file extension.

    :param path: Destination file; parent directories are created.
    :type path: str | os.PathLike
    :param image: Pixels to write.
    :type image: numpy.ndarray | SourceImage
    :return: the written path
    :rtype: pathlib.Path
    """
    if isinstance(image, SourceImage):
        image = image.pixels
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(np.asarray(image)).save(path)
    return path
