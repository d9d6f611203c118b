# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Exceptions, warnings and status codes raised by the normalization pipeline.

Three kinds of trouble are distinguished:

- *degenerate input* (too few distinguishing colors, an empty bright part,
  near-zero seed rows) is recovered locally with a deterministic fallback;
  it is reported through :class:`FactorizationStatus` and a
  :class:`DegenerateInputWarning`.
- *numerical failure* (the factorization collapsed or became non-finite)
  raises :class:`NumericalFailureError` and aborts the call.
- *configuration errors* (e.g. a suppressed-channel index that the image
  does not have) raise :class:`ConfigurationError` before any computation.
"""

from __future__ import annotations

import enum


class FactorizationStatus(enum.Enum):
    """Outcome of factorizing one source image."""

    OK = "ok"
    DEGENERATE = "degenerate"

    def combine(self, other: FactorizationStatus) -> FactorizationStatus:
        """Return the worse of two statuses."""
        if FactorizationStatus.DEGENERATE in (self, other):
            return FactorizationStatus.DEGENERATE
        return FactorizationStatus.OK


class ConfigurationError(ValueError):
    """Raised when normalization parameters are invalid for an image."""


class NumericalFailureError(RuntimeError):
    """Raised when the factorization collapses to zero or non-finite values."""


class DegenerateInputWarning(UserWarning):
    """Emitted when a fallback had to be used for a degenerate image."""
