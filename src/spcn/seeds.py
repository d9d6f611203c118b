# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Turn distinguisher colors into the initial stain color matrix."""

from __future__ import annotations

import logging

import numpy as np

from spcn.deconvolution import DEFAULT_BACKGROUND_INTENSITY, density_to_intensity
from spcn.errors import FactorizationStatus
from spcn.parameters import NUMBER_OF_STAINS, NormalizationParameters
from spcn.stains import identify_stains

logger = logging.getLogger(__name__)


def distinguishers_to_nmf_seeds(
    distinguishers: np.ndarray,
    parameters: NormalizationParameters | None = None,
    background_intensity: float = DEFAULT_BACKGROUND_INTENSITY,
) -> tuple[np.ndarray, np.ndarray, FactorizationStatus]:
    """Build the seed ``H`` and the unstained pixel from distinguisher densities.

    Row 0 of the seed is the density of the brightest distinguisher (the
    unstained background).  Rows 1 and 2 are the densities the two stains add
    on top of it, ordered hematoxylin then eosin.  Missing distinguishers are
    synthesized deterministically: a missing stain copies the one that was
    found, and with no stain at all both copy the background density.

    :param distinguishers: ``(count, channels)`` densities with
        ``1 <= count <= NUMBER_OF_STAINS + 1``.
    :type distinguishers: numpy.ndarray
    :param parameters: Supplies ``epsilon1`` and the suppressed channels.
    :type parameters: NormalizationParameters | None
    :param background_intensity: Converts the unstained density back to a
        pixel value.
    :type background_intensity: float
    :return: ``(matrix_h, unstained_pixel, status)``
    :rtype: tuple[numpy.ndarray, numpy.ndarray, FactorizationStatus]
    :raises ValueError: If the number of distinguishers is out of range.
    """
    if parameters is None:
        parameters = NormalizationParameters()
    distinguishers = np.asarray(distinguishers)
    count = distinguishers.shape[0] if distinguishers.ndim == 2 else 0
    if not 1 <= count <= NUMBER_OF_STAINS + 1:
        msg = (
            f"expected between 1 and {NUMBER_OF_STAINS + 1} distinguishers, "
            f"got shape {distinguishers.shape}"
        )
        raise ValueError(msg)

    status = FactorizationStatus.OK
    unstained_index = int(np.argmin(np.linalg.norm(distinguishers, axis=1)))
    unstained = distinguishers[unstained_index]
    stains = [
        np.maximum(distinguishers[row] - unstained, 0.0)
        for row in range(count)
        if row != unstained_index
    ]
    if count < NUMBER_OF_STAINS + 1:
        status = FactorizationStatus.DEGENERATE
        logger.debug("only %d distinguisher(s); synthesizing stain rows", count)
        template = stains[-1] if stains else unstained
        while len(stains) < NUMBER_OF_STAINS:
            stains.append(template.copy())

    matrix_h = np.vstack([unstained, *stains]).astype(distinguishers.dtype, copy=False)
    weak = np.linalg.norm(matrix_h, axis=1) < parameters.epsilon1
    if np.any(weak):
        status = FactorizationStatus.DEGENERATE
        logger.debug("flooring %d near-zero seed row(s)", int(weak.sum()))
        matrix_h[weak] = np.maximum(matrix_h[weak], parameters.epsilon1)

    _, hematoxylin, eosin = identify_stains(matrix_h, parameters, unstained_index=0)
    matrix_h = matrix_h[[0, hematoxylin, eosin]]
    unstained_pixel = density_to_intensity(matrix_h[0], background_intensity)
    return matrix_h, unstained_pixel, status
