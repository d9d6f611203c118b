# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Search for distinguishing pixels: candidate pure-stain and background colors.

Pure stains and the unstained background are the extremal colors of an
image in optical-density space, where every other pixel is approximately a
non-negative mixture of them.  They are found by iterative farthest-point
projection rather than an eigendecomposition:

1. the pixel farthest from the centroid is the first distinguisher and the
   matrix is recentered on it;
2. the pixel of largest remaining magnitude is the next distinguisher, and
   the matrix is projected onto the hyperplane orthogonal to it;
3. step 2 repeats until ``NUMBER_OF_STAINS + 1`` pixels are found or the
   remaining points are closer to the span found so far than a small
   fraction of the first extent, i.e. only quantization noise is left.

A second pass revisits each distinguisher in the original coordinates and
averages the pixels closest to the extreme, which removes the drift of the
repeated projections.

All functions take pixel *rows*: a ``(N, channels)`` density matrix, i.e.
the transpose of the color matrix built by
:func:`spcn.deconvolution.image_to_matrix`.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np

from spcn.parameters import NUMBER_OF_STAINS, NormalizationParameters

logger = logging.getLogger(__name__)


class Distinguishers(NamedTuple):
    """Result of :func:`matrix_to_distinguishers`."""

    #: ``(count, channels)`` densities, ``1 <= count <= NUMBER_OF_STAINS + 1``.
    colors: np.ndarray
    #: Row indices (into the bright part) found by the first pass.
    indices: tuple[int, ...]
    #: ``True`` when a fallback was needed or fewer than three were found.
    degenerate: bool


# ---------------------------------------------------------------------------
# Geometric primitives
# ---------------------------------------------------------------------------


def recenter_matrix(norm_v: np.ndarray, row: int) -> np.ndarray:
    """Translate every row so that row *row* sits at the origin."""
    return norm_v - norm_v[row]


def project_matrix(norm_v: np.ndarray, row: int) -> np.ndarray:
    """Project every row onto the hyperplane orthogonal to row *row*."""
    direction = norm_v[row]
    squared_norm = direction @ direction
    if squared_norm == 0.0:
        return norm_v
    return norm_v - np.outer(norm_v @ direction, direction / squared_norm)


def matrix_to_one_distinguisher(norm_v: np.ndarray) -> tuple[int, float]:
    """Return the index and squared magnitude of the largest row.

    Ties resolve to the lowest index.
    """
    squared_norms = np.einsum("ij,ij->i", norm_v, norm_v)
    index = int(np.argmax(squared_norms))
    return index, float(squared_norms[index])


# ---------------------------------------------------------------------------
# Bright part
# ---------------------------------------------------------------------------


def matrix_to_bright_part(
    density: np.ndarray,
    epsilon0: float = 1e-3,
) -> tuple[np.ndarray, bool]:
    """Drop near-black pixels before the distinguisher search.

    A pixel is kept when every channel transmits more than *epsilon0* of the
    background intensity, i.e. its density is below ``-log(epsilon0)`` in
    every channel.

    :param density: ``(N, channels)`` optical densities.
    :type density: numpy.ndarray
    :param epsilon0: Smallest transmitted fraction regarded as signal.
    :type epsilon0: float
    :return: the kept rows, and ``True`` if no row survived and the whole
        matrix had to be used instead
    :rtype: tuple[numpy.ndarray, bool]
    """
    limit = -np.log(epsilon0)
    keep = np.all(density < limit, axis=1)
    if not np.any(keep):
        logger.debug("no pixel brighter than epsilon0=%g; using all pixels", epsilon0)
        return density, True
    return density[keep], False


# ---------------------------------------------------------------------------
# Two-pass search
# ---------------------------------------------------------------------------


def first_pass_distinguishers(
    norm_v_start: np.ndarray,
    epsilon2: float = 1e-12,
    tolerance: float = 0.01,
) -> list[int]:
    """Find up to ``NUMBER_OF_STAINS + 1`` extremal rows of *norm_v_start*.

    The search stops early once the largest remaining magnitude falls below
    *tolerance* times the extent of the first recentered pick.  Points that
    deviate from the span found so far only by quantization noise therefore
    do not count as a further color.

    :param norm_v_start: ``(N, channels)`` magnitude-normalized densities.
    :type norm_v_start: numpy.ndarray
    :param epsilon2: Squared magnitude below which the remaining points are
        considered collapsed.
    :type epsilon2: float
    :param tolerance: Relative magnitude below which remaining points are
        considered collapsed.
    :type tolerance: float
    :return: row indices, at least one
    :rtype: list[int]
    """
    centered = norm_v_start - norm_v_start.mean(axis=0)
    first, _ = matrix_to_one_distinguisher(centered)
    indices = [first]
    norm_v = recenter_matrix(norm_v_start, first)

    threshold = epsilon2
    while len(indices) < NUMBER_OF_STAINS + 1:
        index, squared_norm = matrix_to_one_distinguisher(norm_v)
        if squared_norm < threshold:
            break
        if len(indices) == 1:
            threshold = max(epsilon2, tolerance * tolerance * squared_norm)
        indices.append(index)
        norm_v = project_matrix(norm_v, index)
    return indices


def second_pass_distinguishers(
    norm_v_start: np.ndarray,
    first_pass_indices: list[int],
    original: np.ndarray | None = None,
    tolerance: float = 0.01,
    epsilon2: float = 1e-12,
) -> np.ndarray:
    """Refine the colors of the first-pass distinguishers.

    For each distinguisher every other distinguisher is projected out of the
    unprojected matrix, leaving one direction of variation.  The colors of
    all pixels within *tolerance* of the extreme along that direction are
    averaged.

    :param norm_v_start: ``(N, channels)`` magnitude-normalized densities.
    :type norm_v_start: numpy.ndarray
    :param first_pass_indices: Indices returned by
        :func:`first_pass_distinguishers`.
    :type first_pass_indices: list[int]
    :param original: Rows whose colors are averaged; defaults to
        *norm_v_start*.
    :type original: numpy.ndarray | None
    :param tolerance: Relative distance from the extreme.
    :type tolerance: float
    :param epsilon2: Projections at or below this value fall back to the
        first-pass pixel itself.
    :type epsilon2: float
    :return: ``(len(first_pass_indices), channels)`` colors
    :rtype: numpy.ndarray
    """
    if original is None:
        original = norm_v_start
    colors = np.empty((len(first_pass_indices), original.shape[1]), dtype=original.dtype)
    if len(first_pass_indices) == 1:
        colors[0] = original[first_pass_indices[0]]
        return colors

    for position, index in enumerate(first_pass_indices):
        others = [other for other in first_pass_indices if other != index]
        norm_v = recenter_matrix(norm_v_start, others[0])
        for other in others[1:]:
            norm_v = project_matrix(norm_v, other)

        projections = norm_v @ norm_v[index]
        extreme = projections.max()
        if extreme <= epsilon2:
            colors[position] = original[index]
            continue
        members = projections >= (1.0 - tolerance) * extreme
        colors[position] = original[members].mean(axis=0)
    return colors


def matrix_to_distinguishers(
    density: np.ndarray,
    parameters: NormalizationParameters | None = None,
) -> Distinguishers:
    """Find the distinguishing colors of a density matrix.

    :param density: ``(N, channels)`` optical densities.
    :type density: numpy.ndarray
    :param parameters: Tolerances; defaults when ``None``.
    :type parameters: NormalizationParameters | None
    :return: distinguisher colors in density units
    :rtype: Distinguishers
    :raises ValueError: If *density* is not a non-empty 2-D matrix.
    """
    if parameters is None:
        parameters = NormalizationParameters()
    density = np.asarray(density)
    if density.ndim != 2 or density.shape[0] == 0:
        msg = f"density must be a non-empty (N, channels) matrix, got {density.shape}"
        raise ValueError(msg)

    bright, degenerate = matrix_to_bright_part(density, parameters.epsilon0)
    inf_norm = float(np.abs(bright).max())
    if inf_norm < parameters.epsilon0:
        logger.debug("bright part is a single color (inf norm %g)", inf_norm)
        return Distinguishers(bright[:1].copy(), (0,), True)

    norm_v_start = bright / bright.dtype.type(inf_norm)
    indices = first_pass_distinguishers(
        norm_v_start, parameters.epsilon2, parameters.distinguisher_tolerance
    )
    colors = second_pass_distinguishers(
        norm_v_start,
        indices,
        original=bright,
        tolerance=parameters.distinguisher_tolerance,
        epsilon2=parameters.epsilon2,
    )
    degenerate = degenerate or len(indices) < NUMBER_OF_STAINS + 1
    logger.debug(
        "found %d distinguisher(s) among %d bright pixels", len(indices), bright.shape[0]
    )
    return Distinguishers(colors, tuple(indices), degenerate)
