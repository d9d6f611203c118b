# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Structure-preserving color normalization of H&E images.

The input image keeps its own stain *concentrations* (the tissue structure)
but is redrawn with the stain *colors* of a reference image.  Each image is
factorized once (see :mod:`spcn.factorization`) and the factorizations are
cached per role, so normalizing many inputs against one reference only
factorizes the reference once.

Reconstruction is a pure per-pixel function of the two factorizations and
runs over independent row tiles, optionally on a thread pool.

Typical usage::

    from spcn import StructurePreservingNormalizer

    normalizer = StructurePreservingNormalizer()
    result = normalizer.normalize(im_input, im_reference)
    im_output = result.image

    # or, for a one-off call
    from spcn import normalize

    im_output = normalize(im_input, im_reference, max_number_of_iterations=50)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Union

import numpy as np
from numpy.typing import ArrayLike

from spcn.cache import FactorizationCache, Role, SourceImage, image_key
from spcn.deconvolution import (
    ChannelImage,
    as_channel_image,
    density_to_intensity,
    intensity_to_density,
    working_dtype,
)
from spcn.errors import ConfigurationError, FactorizationStatus
from spcn.factorization import Factorization, compute_factorization
from spcn.parameters import NormalizationParameters

logger = logging.getLogger(__name__)

ImageLike = Union[SourceImage, ArrayLike]


# ---------------------------------------------------------------------------
# Per-pixel reconstruction
# ---------------------------------------------------------------------------


def _basis(
    stain_matrix: np.ndarray,
    unstained_pixel: np.ndarray,
    background_intensity: float,
    epsilon1: float,
    dtype: np.dtype,
) -> np.ndarray:
    """Stack the unstained density on top of the stain rows of *stain_matrix*."""
    basis = np.array(stain_matrix, dtype=dtype, copy=True)
    basis[0] = intensity_to_density(
        np.asarray(unstained_pixel, dtype=dtype), background_intensity, epsilon1
    )
    return basis


class _PixelMapper:
    """Maps input intensities to output intensities for a pair of factorizations."""

    def __init__(
        self,
        input_h: np.ndarray,
        input_unstained: np.ndarray,
        refer_h: np.ndarray,
        refer_unstained: np.ndarray,
        input_background_intensity: float,
        refer_background_intensity: float,
        output_background_intensity: float,
        epsilon1: float,
        dtype: np.dtype,
    ) -> None:
        input_h = np.asarray(input_h)
        refer_h = np.asarray(refer_h)
        if input_h.shape != refer_h.shape or input_h.ndim != 2 or input_h.shape[0] != 3:
            msg = (
                "input and reference stain matrices must both have shape "
                f"(3, channels), got {input_h.shape} and {refer_h.shape}"
            )
            raise ValueError(msg)
        self.dtype = np.dtype(dtype)
        self.epsilon1 = epsilon1
        self.input_background_intensity = input_background_intensity
        self.output_background_intensity = output_background_intensity
        input_basis = _basis(
            input_h, input_unstained, input_background_intensity, epsilon1, self.dtype
        )
        self.unmixing = np.linalg.pinv(input_basis).astype(self.dtype, copy=False)
        self.refer_basis = _basis(
            refer_h, refer_unstained, refer_background_intensity, epsilon1, self.dtype
        )

    @classmethod
    def from_factorizations(
        cls,
        input_factorization: Factorization,
        reference_factorization: Factorization,
        epsilon1: float,
        dtype: np.dtype,
    ) -> _PixelMapper:
        return cls(
            input_factorization.stain_matrix,
            input_factorization.unstained_pixel,
            reference_factorization.stain_matrix,
            reference_factorization.unstained_pixel,
            input_factorization.background_intensity,
            reference_factorization.background_intensity,
            input_factorization.background_intensity,
            epsilon1,
            dtype,
        )

    def __call__(self, pixels: np.ndarray) -> np.ndarray:
        shape = pixels.shape
        density = intensity_to_density(
            np.asarray(pixels, dtype=self.dtype).reshape(-1, shape[-1]),
            self.input_background_intensity,
            self.epsilon1,
        )
        concentrations = np.maximum(density @ self.unmixing, 0.0)
        output = density_to_intensity(
            concentrations @ self.refer_basis, self.output_background_intensity
        )
        return output.reshape(shape)


def reconstruct_pixel(
    input_color: ArrayLike,
    input_h: ArrayLike,
    input_unstained: ArrayLike,
    refer_h: ArrayLike,
    refer_unstained: ArrayLike,
    background_intensity: float = 256.0,
    refer_background_intensity: float | None = None,
    epsilon1: float = 1e-6,
) -> np.ndarray:
    """Redraw one pixel with the reference stain colors.

    The pixel's density is unmixed against the input background and stain
    colors, negative concentrations are clamped to zero, and the
    concentrations are recombined with the reference background and stain
    colors.

    :param input_color: ``(channels,)`` pixel intensities.
    :type input_color: ArrayLike
    :param input_h: ``(3, channels)`` input stain matrix.
    :type input_h: ArrayLike
    :param input_unstained: ``(channels,)`` input background color.
    :type input_unstained: ArrayLike
    :param refer_h: ``(3, channels)`` reference stain matrix.
    :type refer_h: ArrayLike
    :param refer_unstained: ``(channels,)`` reference background color.
    :type refer_unstained: ArrayLike
    :param background_intensity: Unattenuated intensity of the input and
        output.
    :type background_intensity: float
    :param refer_background_intensity: Unattenuated intensity of the
        reference; same as *background_intensity* when ``None``.
    :type refer_background_intensity: float | None
    :param epsilon1: Floor for transmitted fractions.
    :type epsilon1: float
    :return: ``(channels,)`` output intensities, not clipped
    :rtype: numpy.ndarray
    """
    if refer_background_intensity is None:
        refer_background_intensity = background_intensity
    input_color = np.asarray(input_color)
    mapper = _PixelMapper(
        np.asarray(input_h),
        np.asarray(input_unstained),
        np.asarray(refer_h),
        np.asarray(refer_unstained),
        background_intensity,
        refer_background_intensity,
        background_intensity,
        epsilon1,
        working_dtype(input_color.dtype),
    )
    return mapper(input_color.reshape(1, -1))[0]


def _to_output_dtype(
    values: np.ndarray, dtype: np.dtype, background_intensity: float
) -> np.ndarray:
    """Round and clip *values* into the legal range of *dtype*."""
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    if np.issubdtype(dtype, np.floating):
        return np.clip(values, 0.0, background_intensity).astype(dtype)
    return np.clip(np.rint(values), 0, 1).astype(dtype)


def reconstruct_region(
    pixels: ArrayLike,
    input_factorization: Factorization,
    reference_factorization: Factorization,
    epsilon1: float = 1e-6,
) -> np.ndarray:
    """Redraw a block of pixels with the reference stain colors.

    :param pixels: ``(..., channels)`` input intensities.
    :type pixels: ArrayLike
    :param input_factorization: Factorization of the input image.
    :type input_factorization: Factorization
    :param reference_factorization: Factorization of the reference image.
    :type reference_factorization: Factorization
    :param epsilon1: Floor for transmitted fractions.
    :type epsilon1: float
    :return: output intensities in the working precision, not clipped
    :rtype: numpy.ndarray
    """
    pixels = np.asarray(pixels)
    mapper = _PixelMapper.from_factorizations(
        input_factorization,
        reference_factorization,
        epsilon1,
        working_dtype(pixels.dtype),
    )
    return mapper(pixels)


def reconstruct_image(
    image: ArrayLike | ChannelImage,
    input_factorization: Factorization,
    reference_factorization: Factorization,
    max_workers: int = 1,
    tile_rows: int | None = None,
    epsilon1: float = 1e-6,
) -> np.ndarray:
    """Redraw a whole image, tile by tile, into a new array.

    Tiles are independent slabs along the first axis.  With
    ``max_workers > 1`` they are dispatched on a thread pool; tiles only
    read the two factorizations.

    :param image: Input image.
    :type image: ArrayLike | ChannelImage
    :param input_factorization: Factorization of *image*.
    :type input_factorization: Factorization
    :param reference_factorization: Factorization of the reference image.
    :type reference_factorization: Factorization
    :param max_workers: Number of threads; ``1`` runs inline.
    :type max_workers: int
    :param tile_rows: Rows per tile; defaults to an even split over the
        workers.
    :type tile_rows: int | None
    :param epsilon1: Floor for transmitted fractions.
    :type epsilon1: float
    :return: normalized image with the dtype and layout of *image*
    :rtype: numpy.ndarray
    """
    image = as_channel_image(
        image, background_intensity=input_factorization.background_intensity
    )
    pixels = image.pixels
    mapper = _PixelMapper.from_factorizations(
        input_factorization,
        reference_factorization,
        epsilon1,
        working_dtype(pixels.dtype),
    )
    output = np.empty(pixels.shape, dtype=pixels.dtype)
    rows = pixels.shape[0]
    if tile_rows is None:
        tile_rows = max(1, -(-rows // max(1, max_workers)))
    starts = range(0, rows, tile_rows)

    def run_tile(start: int) -> None:
        stop = min(start + tile_rows, rows)
        output[start:stop] = _to_output_dtype(
            mapper(pixels[start:stop]), output.dtype, mapper.output_background_intensity
        )

    if max_workers <= 1 or len(starts) <= 1:
        for start in starts:
            run_tile(start)
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            # list() re-raises the first exception from any tile
            list(executor.map(run_tile, starts))
    logger.debug("reconstructed %d tile(s) of %d row(s)", len(starts), tile_rows)
    return image.restore_layout(output)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class NormalizationResult:
    """Output of :meth:`StructurePreservingNormalizer.normalize`."""

    image: np.ndarray
    input_factorization: Factorization
    reference_factorization: Factorization

    @property
    def input_status(self) -> FactorizationStatus:
        return self.input_factorization.status

    @property
    def reference_status(self) -> FactorizationStatus:
        return self.reference_factorization.status

    @property
    def status(self) -> FactorizationStatus:
        return self.input_status.combine(self.reference_status)

    @property
    def degenerate(self) -> bool:
        return self.status is FactorizationStatus.DEGENERATE


def _pixels_of(image: ImageLike) -> np.ndarray:
    if isinstance(image, SourceImage):
        return np.asarray(image.pixels)
    return np.asarray(image)


class StructurePreservingNormalizer:
    """Normalize input images to the stain colors of reference images.

    :param parameters: Pipeline configuration.
    :type parameters: NormalizationParameters | None
    :param cache: Factorization cache; a private one is created when
        ``None``.
    :type cache: FactorizationCache | None
    :param max_workers: Threads used for reconstruction.
    :type max_workers: int
    :param tile_rows: Rows per reconstruction tile.
    :type tile_rows: int | None
    :raises ConfigurationError: If the parameters are invalid.
    """

    def __init__(
        self,
        parameters: NormalizationParameters | None = None,
        cache: FactorizationCache | None = None,
        max_workers: int = 1,
        tile_rows: int | None = None,
    ) -> None:
        if max_workers < 1:
            msg = f"max_workers must be at least 1, got {max_workers}"
            raise ConfigurationError(msg)
        if tile_rows is not None and tile_rows < 1:
            msg = f"tile_rows must be at least 1, got {tile_rows}"
            raise ConfigurationError(msg)
        self.parameters = parameters if parameters is not None else NormalizationParameters()
        self.cache = cache if cache is not None else FactorizationCache()
        self.max_workers = max_workers
        self.tile_rows = tile_rows

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(parameters={self.parameters!r}, "
            f"cache={self.cache!r}, max_workers={self.max_workers}, "
            f"tile_rows={self.tile_rows})"
        )

    @property
    def parameters(self) -> NormalizationParameters:
        return self._parameters

    @parameters.setter
    def parameters(self, parameters: NormalizationParameters) -> None:
        parameters.validate()
        self._parameters = parameters

    @property
    def color_index_suppressed_by_hematoxylin(self) -> int:
        return self.parameters.color_index_suppressed_by_hematoxylin

    @color_index_suppressed_by_hematoxylin.setter
    def color_index_suppressed_by_hematoxylin(self, index: int) -> None:
        self.parameters = replace(
            self.parameters, color_index_suppressed_by_hematoxylin=index
        )

    @property
    def color_index_suppressed_by_eosin(self) -> int:
        return self.parameters.color_index_suppressed_by_eosin

    @color_index_suppressed_by_eosin.setter
    def color_index_suppressed_by_eosin(self, index: int) -> None:
        self.parameters = replace(self.parameters, color_index_suppressed_by_eosin=index)

    def _channel_image(self, image: ImageLike) -> ChannelImage:
        return as_channel_image(
            _pixels_of(image), background_intensity=self.parameters.background_intensity
        )

    def compute_factorization(
        self, image: ImageLike, role: Role = Role.INPUT
    ) -> Factorization:
        """Return the (cached) factorization of *image* in *role*.

        :param image: Array or :class:`~spcn.cache.SourceImage`.
        :type image: SourceImage | ArrayLike
        :param role: Cache slot to use.
        :type role: Role
        :return: the factorization
        :rtype: Factorization
        """
        channel_image = self._channel_image(image)
        self.parameters.validate(channel_image.number_of_channels)
        return self._factorize(image, channel_image, Role(role))

    def _factorize(
        self, image: ImageLike, channel_image: ChannelImage, role: Role
    ) -> Factorization:
        parameters = self.parameters
        return self.cache.get_or_compute(
            role,
            image_key(image),
            parameters,
            lambda: compute_factorization(channel_image, parameters),
        )

    def normalize(
        self, input_image: ImageLike, reference_image: ImageLike
    ) -> NormalizationResult:
        """Redraw *input_image* with the stain colors of *reference_image*.

        Both factorizations are computed (or taken from the cache) before
        any output pixel is produced; a fatal error leaves no output.

        :param input_image: Image providing the structure.
        :type input_image: SourceImage | ArrayLike
        :param reference_image: Image providing the stain colors.
        :type reference_image: SourceImage | ArrayLike
        :return: the normalized image and both factorizations
        :rtype: NormalizationResult
        :raises ConfigurationError: If the parameters do not fit the images
            or the images have different channel counts.
        :raises spcn.errors.NumericalFailureError: If a factorization
            collapses.
        """
        input_channels = self._channel_image(input_image)
        reference_channels = self._channel_image(reference_image)
        if input_channels.number_of_channels != reference_channels.number_of_channels:
            msg = (
                f"input has {input_channels.number_of_channels} channel(s) but the "
                f"reference has {reference_channels.number_of_channels}"
            )
            raise ConfigurationError(msg)
        self.parameters.validate(input_channels.number_of_channels)

        input_factorization = self._factorize(input_image, input_channels, Role.INPUT)
        reference_factorization = self._factorize(
            reference_image, reference_channels, Role.REFERENCE
        )
        output = reconstruct_image(
            input_channels,
            input_factorization,
            reference_factorization,
            max_workers=self.max_workers,
            tile_rows=self.tile_rows,
            epsilon1=self.parameters.epsilon1,
        )
        return NormalizationResult(output, input_factorization, reference_factorization)


def normalize(
    input_image: ImageLike,
    reference_image: ImageLike,
    parameters: NormalizationParameters | None = None,
    max_workers: int = 1,
    **overrides: Any,
) -> np.ndarray:
    """Normalize *input_image* to the stain colors of *reference_image*.

    A convenience wrapper around :class:`StructurePreservingNormalizer`
    without a persistent cache.  Keyword arguments override fields of
    *parameters*.

    :param input_image: Image providing the structure.
    :type input_image: SourceImage | ArrayLike
    :param reference_image: Image providing the stain colors.
    :type reference_image: SourceImage | ArrayLike
    :param parameters: Base configuration.
    :type parameters: NormalizationParameters | None
    :param max_workers: Threads used for reconstruction.
    :type max_workers: int
    :return: the normalized image, same dtype and shape as *input_image*
    :rtype: numpy.ndarray

    Example::

        import numpy as np
        from spcn import normalize

        im_output = normalize(im_input, im_reference, color_index_suppressed_by_eosin=1)
    """
    if parameters is None:
        parameters = NormalizationParameters()
    if overrides:
        try:
            parameters = replace(parameters, **overrides)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc
    normalizer = StructurePreservingNormalizer(parameters, max_workers=max_workers)
    return normalizer.normalize(input_image, reference_image).image
