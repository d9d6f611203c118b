# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Pixel matrices and optical-density conversion.

This module is the boundary between images and the linear algebra of the
normalization.  Images are numpy arrays whose last axis holds the color
channels (2-D arrays are single-channel images).  They are flattened into a
``(channels, N)`` color matrix and converted to optical density, where the
contributions of independent stains add up linearly.

The input array's dtype controls the working precision:

- ``float64`` → kept as-is
- ``float32`` → kept as-is
- ``float16`` → promoted to float32
- integer types → promoted to float64

Typical usage::

    import numpy as np
    from spcn.deconvolution import (
        as_channel_image,
        image_to_matrix,
        intensity_to_density,
    )

    im_rgb = np.random.default_rng(0).integers(0, 256, (64, 64, 3), dtype=np.uint8)
    image = as_channel_image(im_rgb)
    matrix_v = image_to_matrix(image)  # shape (3, 4096), float64
    density = intensity_to_density(matrix_v, image.background_intensity)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

# Type alias for the supported return types.
_FloatArray = Union[NDArray[np.float32], NDArray[np.float64]]

#: Background intensity for 8-bit and floating-point images.
DEFAULT_BACKGROUND_INTENSITY = 256.0


def _resolve_dtype(arr: np.ndarray) -> np.ndarray:
    """Coerce *arr* to a float working dtype, preserving precision.

    - float64 → kept as-is
    - float32 → kept as-is
    - float16 → promoted to float32
    - integer / other → promoted to float64

    :param arr: input array (any dtype)
    :type arr: numpy.ndarray
    :return: array guaranteed to be float32 or float64
    :rtype: numpy.ndarray
    """
    if arr.dtype == np.float64:
        return arr
    if arr.dtype == np.float32:
        return arr
    if arr.dtype == np.float16:
        return arr.astype(np.float32)
    return arr.astype(np.float64)


def working_dtype(dtype: np.dtype) -> np.dtype:
    """Return the float dtype used for computations on *dtype* data."""
    dtype = np.dtype(dtype)
    if dtype in (np.float32, np.float16):
        return np.dtype(np.float32)
    return np.dtype(np.float64)


def default_background_intensity(dtype: np.dtype) -> float:
    """Return the unattenuated intensity for pixels of *dtype*.

    One more than the largest representable value for integer types wider
    than 8 bits, and ``256`` for 8-bit, boolean and floating-point data
    (floating-point images are expected on the ``[0, 255]`` scale).

    :param dtype: pixel dtype
    :type dtype: numpy.dtype
    :return: background intensity
    :rtype: float
    """
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer) and dtype.itemsize > 1:
        return float(np.iinfo(dtype).max) + 1.0
    return DEFAULT_BACKGROUND_INTENSITY


# ---------------------------------------------------------------------------
# Channel access
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChannelImage:
    """An image whose channel layout has been resolved.

    ``pixels`` always carries an explicit trailing channel axis, so a
    single-channel image has shape ``(..., 1)``.  ``scalar`` records whether
    the original array had no channel axis, which is restored on output.
    """

    pixels: np.ndarray
    scalar: bool
    background_intensity: float

    @property
    def number_of_channels(self) -> int:
        return self.pixels.shape[-1]

    @property
    def spatial_shape(self) -> tuple[int, ...]:
        return self.pixels.shape[:-1]

    @property
    def dtype(self) -> np.dtype:
        return self.pixels.dtype

    def channel(self, index: int) -> np.ndarray:
        """Return the values of one channel for every pixel."""
        return self.pixels[..., index]

    def restore_layout(self, pixels: np.ndarray) -> np.ndarray:
        """Drop the synthetic channel axis again for scalar images."""
        if self.scalar:
            return pixels[..., 0]
        return pixels


def as_channel_image(
    image: ArrayLike | ChannelImage,
    multichannel: bool | None = None,
    background_intensity: float | None = None,
) -> ChannelImage:
    """Resolve the channel layout of *image* once.

    :param image: Pixel array.  A 2-D array is a single-channel image;
        otherwise the last axis holds the channels unless *multichannel* is
        ``False``.
    :type image: ArrayLike | ChannelImage
    :param multichannel: Force the interpretation of the last axis.
    :type multichannel: bool | None
    :param background_intensity: Unattenuated intensity; derived from the
        dtype when ``None``.
    :type background_intensity: float | None
    :return: the image with an explicit channel axis
    :rtype: ChannelImage
    :raises ValueError: If the array has fewer than two dimensions.
    """
    if isinstance(image, ChannelImage):
        if background_intensity is None or background_intensity == image.background_intensity:
            return image
        return ChannelImage(image.pixels, image.scalar, float(background_intensity))

    pixels = np.asarray(image)
    if multichannel is None:
        multichannel = pixels.ndim >= 3
    min_ndim = 3 if multichannel else 2
    if pixels.ndim < min_ndim:
        msg = (
            f"image must have at least {min_ndim} dimensions "
            f"({'spatial + channel' if multichannel else 'spatial'}), "
            f"got shape {pixels.shape}"
        )
        raise ValueError(msg)
    scalar = not multichannel
    if scalar:
        pixels = pixels[..., np.newaxis]
    if background_intensity is None:
        background_intensity = default_background_intensity(pixels.dtype)
    return ChannelImage(pixels, scalar, float(background_intensity))


# ---------------------------------------------------------------------------
# Pixel matrix
# ---------------------------------------------------------------------------


def image_to_matrix(
    image: ArrayLike | ChannelImage,
    region: tuple[slice, ...] | None = None,
) -> _FloatArray:
    """Flatten an image region into a ``(channels, N)`` color matrix.

    :param image: Image to flatten.
    :type image: ArrayLike | ChannelImage
    :param region: Optional tuple of slices over the spatial axes.
    :type region: tuple[slice, ...] | None
    :return: one column per pixel, in the working precision
    :rtype: NDArray[np.float32] | NDArray[np.float64]
    :raises ValueError: If the region is empty or holds non-finite values.
    """
    image = as_channel_image(image)
    pixels = image.pixels
    if region is not None:
        if len(region) > len(image.spatial_shape):
            msg = (
                f"region has {len(region)} axes but the image has "
                f"{len(image.spatial_shape)} spatial axes"
            )
            raise ValueError(msg)
        pixels = pixels[tuple(region)]

    matrix_v = _resolve_dtype(pixels.reshape(-1, image.number_of_channels)).T
    if matrix_v.shape[1] == 0:
        msg = f"cannot build a color matrix from an empty region of shape {pixels.shape}"
        raise ValueError(msg)
    if not np.all(np.isfinite(matrix_v)):
        msg = "image contains non-finite pixel values"
        raise ValueError(msg)
    return np.ascontiguousarray(matrix_v)


# ---------------------------------------------------------------------------
# Intensity ↔ optical density
# ---------------------------------------------------------------------------


def intensity_to_density(
    intensities: ArrayLike,
    background_intensity: float = DEFAULT_BACKGROUND_INTENSITY,
    epsilon: float = 1e-6,
) -> _FloatArray:
    """Convert intensities to optical density.

    ``od = -log(max(I / I0, epsilon))``, clamped to be non-negative.

    :param intensities: Intensities of any shape.
    :type intensities: ArrayLike
    :param background_intensity: Unattenuated intensity ``I0``.
    :type background_intensity: float
    :param epsilon: Floor for the transmitted fraction, which bounds the
        density of black pixels.
    :type epsilon: float
    :return: optical density, same shape, working precision
    :rtype: NDArray[np.float32] | NDArray[np.float64]
    """
    intensities = _resolve_dtype(np.asarray(intensities))
    ratio = np.maximum(intensities / intensities.dtype.type(background_intensity), epsilon)
    return np.maximum(-np.log(ratio), 0.0).astype(intensities.dtype, copy=False)


def density_to_intensity(
    density: ArrayLike,
    background_intensity: float = DEFAULT_BACKGROUND_INTENSITY,
) -> _FloatArray:
    """Convert optical density back to intensity, ``I0 * exp(-od)``.

    :param density: Optical density of any shape.
    :type density: ArrayLike
    :param background_intensity: Unattenuated intensity ``I0``.
    :type background_intensity: float
    :return: intensities, same shape, working precision
    :rtype: NDArray[np.float32] | NDArray[np.float64]
    """
    density = _resolve_dtype(np.asarray(density))
    return (density.dtype.type(background_intensity) * np.exp(-density)).astype(
        density.dtype, copy=False
    )
