# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Estimate the stain colors of one image.

:func:`compute_factorization` runs the whole per-image pipeline:

1. flatten the image into a color matrix and convert it to optical density;
2. find the distinguishing colors;
3. seed the stain color matrix ``H`` and the unstained pixel;
4. refine ``H`` by non-negative matrix factorization;
5. label the rows unstained / hematoxylin / eosin.

The result is a read-only :class:`Factorization`, cheap to share between
threads and to cache per source image.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike

from spcn.deconvolution import (
    ChannelImage,
    as_channel_image,
    density_to_intensity,
    image_to_matrix,
    intensity_to_density,
)
from spcn.distinguishers import matrix_to_distinguishers
from spcn.errors import DegenerateInputWarning, FactorizationStatus
from spcn.nmf import solve_nmf
from spcn.parameters import NormalizationParameters
from spcn.seeds import distinguishers_to_nmf_seeds
from spcn.stains import identify_stains

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Factorization:
    """Stain colors of one image.

    :ivar stain_matrix: ``(3, channels)`` optical densities; row 0 is the
        unstained background, row 1 hematoxylin, row 2 eosin.  Stain rows are
        the density a stain adds on top of the background.
    :ivar unstained_pixel: background color in intensity units.
    :ivar background_intensity: intensity of an unattenuated channel.
    :ivar status: ``DEGENERATE`` if a fallback was needed.
    :ivar number_of_distinguishers: distinguishing colors found, 1 to 3.
    """

    stain_matrix: np.ndarray
    unstained_pixel: np.ndarray
    background_intensity: float
    status: FactorizationStatus = FactorizationStatus.OK
    number_of_distinguishers: int = 3

    def __post_init__(self) -> None:
        for name in ("stain_matrix", "unstained_pixel"):
            array = np.array(getattr(self, name), copy=True)
            array.flags.writeable = False
            object.__setattr__(self, name, array)

    @property
    def number_of_channels(self) -> int:
        return self.stain_matrix.shape[1]

    @property
    def unstained_density(self) -> np.ndarray:
        return intensity_to_density(self.unstained_pixel, self.background_intensity)

    @property
    def hematoxylin(self) -> np.ndarray:
        return self.stain_matrix[1]

    @property
    def eosin(self) -> np.ndarray:
        return self.stain_matrix[2]


def _rescale(matrix_w: np.ndarray, matrix_h: np.ndarray, epsilon1: float) -> np.ndarray:
    """Scale the rows of *matrix_h* so each concentration column peaks at 1."""
    peaks = matrix_w.max(axis=0) if matrix_w.shape[0] else np.ones(matrix_h.shape[0])
    peaks = np.where(peaks > epsilon1, peaks, 1.0)
    return matrix_h * peaks[:, np.newaxis].astype(matrix_h.dtype)


def compute_factorization(
    image: ArrayLike | ChannelImage,
    parameters: NormalizationParameters | None = None,
) -> Factorization:
    """Estimate the stain color matrix and unstained pixel of *image*.

    :param image: Source image, channels on the last axis (see
        :func:`spcn.deconvolution.as_channel_image`).
    :type image: ArrayLike | ChannelImage
    :param parameters: Pipeline configuration; defaults when ``None``.
    :type parameters: NormalizationParameters | None
    :return: the read-only factorization
    :rtype: Factorization
    :raises spcn.errors.ConfigurationError: If the parameters do not fit the
        image.
    :raises spcn.errors.NumericalFailureError: If the factorization
        collapses.
    :raises ValueError: If the image is empty or not finite.
    """
    if parameters is None:
        parameters = NormalizationParameters()
    image = as_channel_image(image, background_intensity=parameters.background_intensity)
    parameters.validate(image.number_of_channels)
    background_intensity = image.background_intensity

    matrix_v = image_to_matrix(image)
    density = intensity_to_density(matrix_v.T, background_intensity, parameters.epsilon1)

    distinguishers = matrix_to_distinguishers(density, parameters)
    seed_h, _, status = distinguishers_to_nmf_seeds(
        distinguishers.colors, parameters, background_intensity
    )
    if distinguishers.degenerate:
        status = status.combine(FactorizationStatus.DEGENERATE)

    matrix_w, matrix_h = solve_nmf(density, seed_h, parameters)
    if parameters.max_number_of_iterations > 0:
        matrix_h = _rescale(matrix_w, matrix_h, parameters.epsilon1)
        _, hematoxylin, eosin = identify_stains(matrix_h, parameters, unstained_index=0)
        matrix_h = matrix_h[[0, hematoxylin, eosin]]

    factorization = Factorization(
        stain_matrix=matrix_h,
        unstained_pixel=density_to_intensity(matrix_h[0], background_intensity),
        background_intensity=background_intensity,
        status=status,
        number_of_distinguishers=len(distinguishers.indices),
    )
    if status is FactorizationStatus.DEGENERATE:
        msg = (
            f"degenerate image: {factorization.number_of_distinguishers} "
            "distinguishing color(s) found; using a fallback stain matrix"
        )
        logger.warning(msg)
        warnings.warn(msg, DegenerateInputWarning, stacklevel=2)
    else:
        logger.debug("factorized %d pixels", density.shape[0])
    return factorization
