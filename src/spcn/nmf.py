# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Sparse non-negative matrix factorization by multiplicative updates.

The pixel densities ``X`` (``N x channels``, one row per pixel) are
factorized as ``X ≈ W H`` with concentrations ``W`` (``N x 3``) and stain
colors ``H`` (``3 x channels``), following Virtanen's multiplicative update
rules with an L1 (Lasso) penalty on ``W``:

- Euclidean: minimizes ``½‖X − WH‖²_F + λ‖W‖₁``
- Kullback–Leibler: minimizes ``Σ X log(X / WH) − X + WH + λ‖W‖₁``

Each update multiplies a factor by the ratio of the negative to the positive
part of its gradient, so non-negative factors stay non-negative.

Typical usage::

    from spcn.nmf import initial_concentrations, virtanen_euclidean

    matrix_w = initial_concentrations(density, seed_h)
    matrix_w, matrix_h = virtanen_euclidean(
        density, matrix_w, seed_h, number_of_iterations=100
    )
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from spcn.errors import NumericalFailureError
from spcn.parameters import CostFunction, NormalizationParameters

logger = logging.getLogger(__name__)

#: Called after every iteration with ``(iteration, matrix_w, matrix_h)``.
IterationCallback = Optional[Callable[[int, np.ndarray, np.ndarray], None]]


# ---------------------------------------------------------------------------
# Seeding and checks
# ---------------------------------------------------------------------------


def initial_concentrations(
    matrix_x: np.ndarray,
    matrix_h: np.ndarray,
    epsilon1: float = 1e-6,
) -> np.ndarray:
    """Project pixel densities onto the stain colors to seed ``W``.

    Uses the pseudo-inverse of *matrix_h* and clamps negative concentrations
    to zero.  Pixels whose density magnitude is below *epsilon1* get zero
    concentration.

    :param matrix_x: ``(N, channels)`` pixel densities.
    :type matrix_x: numpy.ndarray
    :param matrix_h: ``(3, channels)`` stain colors.
    :type matrix_h: numpy.ndarray
    :param epsilon1: Magnitude below which a pixel is treated as empty.
    :type epsilon1: float
    :return: ``(N, 3)`` non-negative concentrations
    :rtype: numpy.ndarray
    """
    matrix_w = np.maximum(matrix_x @ np.linalg.pinv(matrix_h), 0.0).astype(
        matrix_x.dtype, copy=False
    )
    empty = np.linalg.norm(matrix_x, axis=1) < epsilon1
    matrix_w[empty] = 0.0
    return matrix_w


def check_factorization(
    matrix_w: np.ndarray,
    matrix_h: np.ndarray,
    check_concentrations: bool = True,
) -> None:
    """Raise if the factorization has collapsed.

    :param check_concentrations: Also reject an all-zero column of ``W``.
        Seeds are exempt, since an image may legitimately lack a stain
        before refinement has had a chance to use it.
    :type check_concentrations: bool
    :raises NumericalFailureError: If either factor holds non-finite values,
        ``H`` has an all-zero row, or ``W`` has an all-zero column.
    """
    if not (np.all(np.isfinite(matrix_w)) and np.all(np.isfinite(matrix_h))):
        msg = "non-negative matrix factorization produced non-finite values"
        raise NumericalFailureError(msg)
    if np.any(~np.any(matrix_h > 0.0, axis=1)):
        msg = "non-negative matrix factorization collapsed a stain color to zero"
        raise NumericalFailureError(msg)
    if (
        check_concentrations
        and matrix_w.shape[0]
        and np.any(~np.any(matrix_w > 0.0, axis=0))
    ):
        msg = "non-negative matrix factorization collapsed a concentration map to zero"
        raise NumericalFailureError(msg)


# ---------------------------------------------------------------------------
# Objectives
# ---------------------------------------------------------------------------


def euclidean_cost(
    matrix_x: np.ndarray,
    matrix_w: np.ndarray,
    matrix_h: np.ndarray,
    lasso_penalty: float = 0.02,
) -> float:
    """Return ``½‖X − WH‖²_F + λ‖W‖₁``."""
    residual = matrix_x - matrix_w @ matrix_h
    return float(0.5 * np.sum(residual * residual) + lasso_penalty * np.sum(matrix_w))


def kl_divergence_cost(
    matrix_x: np.ndarray,
    matrix_w: np.ndarray,
    matrix_h: np.ndarray,
    lasso_penalty: float = 0.02,
    epsilon1: float = 1e-6,
) -> float:
    """Return the generalized KL divergence ``D(X ‖ WH) + λ‖W‖₁``."""
    product = np.maximum(matrix_w @ matrix_h, epsilon1)
    positive = matrix_x > 0.0
    divergence = np.sum(
        matrix_x[positive] * np.log(matrix_x[positive] / product[positive])
    ) - np.sum(matrix_x) + np.sum(product)
    return float(divergence + lasso_penalty * np.sum(matrix_w))


# ---------------------------------------------------------------------------
# Multiplicative updates
# ---------------------------------------------------------------------------


def virtanen_euclidean(
    matrix_x: np.ndarray,
    matrix_w: np.ndarray,
    matrix_h: np.ndarray,
    number_of_iterations: int,
    lasso_penalty: float = 0.02,
    epsilon2: float = 1e-12,
    callback: IterationCallback = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Refine ``W`` and ``H`` under the Euclidean cost.

    :param matrix_x: ``(N, channels)`` pixel densities.
    :type matrix_x: numpy.ndarray
    :param matrix_w: ``(N, 3)`` non-negative seed concentrations.
    :type matrix_w: numpy.ndarray
    :param matrix_h: ``(3, channels)`` non-negative seed colors.
    :type matrix_h: numpy.ndarray
    :param number_of_iterations: Number of update rounds.
    :type number_of_iterations: int
    :param lasso_penalty: L1 penalty λ on ``W``.
    :type lasso_penalty: float
    :param epsilon2: Guard added to every denominator.
    :type epsilon2: float
    :param callback: Called after each round.
    :type callback: IterationCallback
    :return: refined ``(matrix_w, matrix_h)``; the inputs are not modified
    :rtype: tuple[numpy.ndarray, numpy.ndarray]
    """
    matrix_w = matrix_w.copy()
    matrix_h = matrix_h.copy()
    for iteration in range(number_of_iterations):
        matrix_w *= (matrix_x @ matrix_h.T) / (
            matrix_w @ (matrix_h @ matrix_h.T) + lasso_penalty + epsilon2
        )
        matrix_h *= (matrix_w.T @ matrix_x) / ((matrix_w.T @ matrix_w) @ matrix_h + epsilon2)
        if callback is not None:
            callback(iteration, matrix_w, matrix_h)
    return matrix_w, matrix_h


def virtanen_kl_divergence(
    matrix_x: np.ndarray,
    matrix_w: np.ndarray,
    matrix_h: np.ndarray,
    number_of_iterations: int,
    lasso_penalty: float = 0.02,
    epsilon1: float = 1e-6,
    epsilon2: float = 1e-12,
    callback: IterationCallback = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Refine ``W`` and ``H`` under the generalized KL divergence.

    Parameters match :func:`virtanen_euclidean`; *epsilon1* floors the
    reconstruction ``WH`` before it is used as a divisor.
    """
    matrix_w = matrix_w.copy()
    matrix_h = matrix_h.copy()
    for iteration in range(number_of_iterations):
        ratio = matrix_x / np.maximum(matrix_w @ matrix_h, epsilon1)
        matrix_w *= (ratio @ matrix_h.T) / (
            matrix_h.sum(axis=1) + lasso_penalty + epsilon2
        )
        ratio = matrix_x / np.maximum(matrix_w @ matrix_h, epsilon1)
        matrix_h *= (matrix_w.T @ ratio) / (matrix_w.sum(axis=0)[:, np.newaxis] + epsilon2)
        if callback is not None:
            callback(iteration, matrix_w, matrix_h)
    return matrix_w, matrix_h


def solve_nmf(
    matrix_x: np.ndarray,
    matrix_h: np.ndarray,
    parameters: NormalizationParameters | None = None,
    callback: IterationCallback = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Seed ``W`` from *matrix_h* and refine both with the configured cost.

    :param matrix_x: ``(N, channels)`` pixel densities.
    :type matrix_x: numpy.ndarray
    :param matrix_h: ``(3, channels)`` seed colors.
    :type matrix_h: numpy.ndarray
    :param parameters: Cost function, iteration budget and tolerances.
    :type parameters: NormalizationParameters | None
    :param callback: Called after each round.
    :type callback: IterationCallback
    :return: ``(matrix_w, matrix_h)``
    :rtype: tuple[numpy.ndarray, numpy.ndarray]
    :raises NumericalFailureError: If the factorization collapses.
    """
    if parameters is None:
        parameters = NormalizationParameters()
    matrix_h = np.maximum(matrix_h.astype(matrix_x.dtype, copy=False), 0.0)
    matrix_w = initial_concentrations(matrix_x, matrix_h, parameters.epsilon1)
    iterations = parameters.max_number_of_iterations
    if iterations == 0:
        check_factorization(matrix_w, matrix_h, check_concentrations=False)
        return matrix_w, matrix_h

    if parameters.cost_function is CostFunction.KL_DIVERGENCE:
        matrix_w, matrix_h = virtanen_kl_divergence(
            matrix_x,
            matrix_w,
            matrix_h,
            iterations,
            lasso_penalty=parameters.lasso_penalty,
            epsilon1=parameters.epsilon1,
            epsilon2=parameters.epsilon2,
            callback=callback,
        )
    else:
        matrix_w, matrix_h = virtanen_euclidean(
            matrix_x,
            matrix_w,
            matrix_h,
            iterations,
            lasso_penalty=parameters.lasso_penalty,
            epsilon2=parameters.epsilon2,
            callback=callback,
        )
    logger.debug(
        "ran %d %s iteration(s) on %d pixels",
        iterations,
        parameters.cost_function.value,
        matrix_x.shape[0],
    )
    check_factorization(matrix_w, matrix_h)
    return matrix_w, matrix_h
