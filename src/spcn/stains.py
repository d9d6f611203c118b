# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Assign stain identities to the rows of a stain color matrix."""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike

from spcn.parameters import NormalizationParameters


def _suppression_score(row: np.ndarray, parameters: NormalizationParameters) -> float:
    """How much more *row* attenuates the hematoxylin channel than the eosin one."""
    magnitude = float(np.linalg.norm(row))
    if magnitude == 0.0:
        return 0.0
    return float(
        row[parameters.color_index_suppressed_by_hematoxylin]
        - row[parameters.color_index_suppressed_by_eosin]
    ) / magnitude


def identify_stains(
    matrix_h: ArrayLike,
    parameters: NormalizationParameters | None = None,
    unstained_index: int | None = None,
) -> tuple[int, int, int]:
    """Decide which rows of a density matrix are unstained, hematoxylin and eosin.

    The unstained row is *unstained_index* when given, otherwise the row of
    smallest density magnitude (the brightest color).  Of the two remaining
    rows, the one that suppresses the hematoxylin channel more, relative to
    the eosin channel, is hematoxylin.  Ties go to the lower row index.

    :param matrix_h: ``(3, channels)`` matrix of optical densities.
    :type matrix_h: ArrayLike
    :param parameters: Supplies the suppressed-channel indices.
    :type parameters: NormalizationParameters | None
    :param unstained_index: Row known to hold the background.
    :type unstained_index: int | None
    :return: ``(unstained_index, hematoxylin_index, eosin_index)``
    :rtype: tuple[int, int, int]
    :raises ValueError: If *matrix_h* does not have exactly three rows.
    """
    if parameters is None:
        parameters = NormalizationParameters()
    matrix_h = np.asarray(matrix_h, dtype=np.float64)
    if matrix_h.ndim != 2 or matrix_h.shape[0] != 3:
        msg = f"matrix_h must have shape (3, channels), got {matrix_h.shape}"
        raise ValueError(msg)
    parameters.validate(matrix_h.shape[1])

    if unstained_index is None:
        unstained_index = int(np.argmin(np.linalg.norm(matrix_h, axis=1)))
    first, second = (row for row in range(3) if row != unstained_index)

    if _suppression_score(matrix_h[second], parameters) > _suppression_score(
        matrix_h[first], parameters
    ):
        return unstained_index, second, first
    return unstained_index, first, second
