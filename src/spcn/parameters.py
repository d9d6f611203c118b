# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Tunable parameters of the structure-preserving normalization.

All numerical tolerances are exposed here rather than hard-coded, because
they drive both the degenerate-input fallbacks and the convergence of the
non-negative matrix factorization.

Typical usage::

    from spcn.parameters import CostFunction, NormalizationParameters

    params = NormalizationParameters(
        max_number_of_iterations=50,
        cost_function=CostFunction.KL_DIVERGENCE,
    )
    params.validate(number_of_channels=3)
"""

from __future__ import annotations

import enum
import numbers
from dataclasses import dataclass

from spcn.errors import ConfigurationError

#: The algorithm is defined for Hematoxylin and Eosin.  All matrix
#: dimensions that depend on the number of stains derive from this value.
NUMBER_OF_STAINS = 2


class CostFunction(str, enum.Enum):
    """Objective minimized by the multiplicative-update solver."""

    EUCLIDEAN = "euclidean"
    KL_DIVERGENCE = "kl"


@dataclass(frozen=True)
class NormalizationParameters:
    """Configuration shared by every stage of the pipeline.

    :param color_index_suppressed_by_hematoxylin: Channel most attenuated by
        hematoxylin.  Defaults to ``0`` (red in an RGB image).
    :type color_index_suppressed_by_hematoxylin: int
    :param color_index_suppressed_by_eosin: Channel most attenuated by eosin.
        Defaults to ``1`` (green in an RGB image).
    :type color_index_suppressed_by_eosin: int
    :param epsilon0: Small infinity-norm value.  Pixels darker than
        ``epsilon0 * background_intensity`` in any channel are excluded from
        the distinguisher search, and a matrix whose infinity norm is below
        it is treated as a single color.
    :type epsilon0: float
    :param epsilon1: Very small matrix element.  Floors intensity ratios,
        seed rows and the KL reconstruction.
    :type epsilon1: float
    :param epsilon2: Very small squared magnitude.  Guards denominators and
        stops the distinguisher search once the points have collapsed.
    :type epsilon2: float
    :param lasso_penalty: L1 penalty on the concentration matrix.
    :type lasso_penalty: float
    :param max_number_of_iterations: Number of multiplicative updates.
        ``0`` uses the distinguisher seed without refinement.
    :type max_number_of_iterations: int
    :param cost_function: Euclidean or Kullback-Leibler objective.
    :type cost_function: CostFunction
    :param distinguisher_tolerance: Relative distance from the extreme
        within which pixels are averaged into a distinguisher color.  Also
        the relative magnitude below which the search stops looking for
        further distinguishers.
    :type distinguisher_tolerance: float
    :param background_intensity: Intensity of an unattenuated channel used
        for the optical-density transform.  ``None`` derives it from the
        image dtype (256 for 8-bit and float images, ``2**bits`` for wider
        integer images).
    :type background_intensity: float | None
    """

    color_index_suppressed_by_hematoxylin: int = 0
    color_index_suppressed_by_eosin: int = 1
    epsilon0: float = 1e-3
    epsilon1: float = 1e-6
    epsilon2: float = 1e-12
    lasso_penalty: float = 0.02
    max_number_of_iterations: int = 0
    cost_function: CostFunction = CostFunction.EUCLIDEAN
    distinguisher_tolerance: float = 0.01
    background_intensity: float | None = None

    def __post_init__(self) -> None:
        # Accept the plain string spelling, e.g. from the command line.
        try:
            cost_function = CostFunction(self.cost_function)
        except ValueError as exc:
            msg = f"unknown cost_function {self.cost_function!r}"
            raise ConfigurationError(msg) from exc
        object.__setattr__(self, "cost_function", cost_function)

    def validate(self, number_of_channels: int | None = None) -> None:
        """Check the parameters, optionally against an image's channel count.

        :param number_of_channels: Channel count of the image about to be
            processed.  When given, the suppressed-channel indices must be
            valid indices into the pixel channel vector.
        :type number_of_channels: int | None
        :raises ConfigurationError: If any parameter is out of range.
        """
        for name in ("epsilon0", "epsilon1", "epsilon2"):
            if not getattr(self, name) > 0.0:
                msg = f"{name} must be positive, got {getattr(self, name)!r}"
                raise ConfigurationError(msg)
        if not self.lasso_penalty >= 0.0:
            msg = f"lasso_penalty must be non-negative, got {self.lasso_penalty!r}"
            raise ConfigurationError(msg)
        if (
            isinstance(self.max_number_of_iterations, bool)
            or not isinstance(self.max_number_of_iterations, numbers.Integral)
            or self.max_number_of_iterations < 0
        ):
            msg = (
                "max_number_of_iterations must be a non-negative integer, "
                f"got {self.max_number_of_iterations!r}"
            )
            raise ConfigurationError(msg)
        if not 0.0 <= self.distinguisher_tolerance < 1.0:
            msg = (
                "distinguisher_tolerance must lie in [0, 1), "
                f"got {self.distinguisher_tolerance!r}"
            )
            raise ConfigurationError(msg)
        if self.background_intensity is not None and not self.background_intensity > 0.0:
            msg = (
                "background_intensity must be positive, "
                f"got {self.background_intensity!r}"
            )
            raise ConfigurationError(msg)

        if number_of_channels is None:
            return
        for name in (
            "color_index_suppressed_by_hematoxylin",
            "color_index_suppressed_by_eosin",
        ):
            index = getattr(self, name)
            if (
                isinstance(index, bool)
                or not isinstance(index, numbers.Integral)
                or not 0 <= index < number_of_channels
            ):
                msg = (
                    f"{name}={index} is out of range for a pixel with "
                    f"{number_of_channels} channel(s)"
                )
                raise ConfigurationError(msg)
