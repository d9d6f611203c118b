# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Shared pytest fixtures and configuration for spcn tests.

The synthetic H&E-like images are 32x32 mosaics of 8x8 patches.  Every
patch is a mixture ``background + c_h * hematoxylin + c_e * eosin`` in
optical density.  Three patches are pure (background only, pure
hematoxylin, pure eosin); all other mixtures lie strictly inside the
triangle they span, so the pure patches are the extremal colors.
"""

import numpy as np
import pytest

#: (c_h, c_e) per patch, row-major over a 4x4 grid.
PATCH_CONCENTRATIONS = [
    (0.0, 0.0),
    (1.0, 0.0),
    (0.0, 1.0),
    (0.2, 0.1),
    (0.5, 0.2),
    (0.3, 0.3),
    (0.6, 0.1),
    (0.1, 0.6),
    (0.4, 0.4),
    (0.25, 0.5),
    (0.7, 0.05),
    (0.05, 0.7),
    (0.15, 0.15),
    (0.35, 0.1),
    (0.1, 0.35),
    (0.0, 0.0),
]

PATCH_SIZE = 8

INPUT_STAINS = {
    "background": np.array([0.05, 0.06, 0.20]),
    "hematoxylin": np.array([0.65, 0.70, 0.29]),
    "eosin": np.array([0.07, 0.99, 0.11]),
}

REFERENCE_STAINS = {
    "background": np.array([0.03, 0.08, 0.15]),
    "hematoxylin": np.array([0.55, 0.80, 0.30]),
    "eosin": np.array([0.10, 0.90, 0.20]),
}


def concentration_map(flip=False):
    """Return the (32, 32, 2) concentration map of the mosaic."""
    grid = np.array(PATCH_CONCENTRATIONS, dtype=np.float64).reshape(4, 4, 2)
    if flip:
        grid = grid[::-1, ::-1]
    return np.repeat(np.repeat(grid, PATCH_SIZE, axis=0), PATCH_SIZE, axis=1)


def render(stains, concentrations, dtype=np.float64):
    """Render a concentration map with the given stain densities."""
    density = (
        stains["background"]
        + concentrations[..., 0:1] * stains["hematoxylin"]
        + concentrations[..., 1:2] * stains["eosin"]
    )
    image = 256.0 * np.exp(-density)
    if np.issubdtype(np.dtype(dtype), np.integer):
        return np.clip(np.rint(image), 0, 255).astype(dtype)
    return image.astype(dtype)


@pytest.fixture
def rng():
    """Provide a seeded random number generator for reproducible tests.

    :return: numpy random generator with fixed seed
    :rtype: numpy.random.Generator
    """
    return np.random.default_rng(42)


# ---------------------------------------------------------------------------
# Random images
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_rgb_image(rng):
    """Provide a small random RGB image for smoke tests (uint8).

    :return: 48x48x3 uint8 image
    :rtype: numpy.ndarray
    """
    return rng.integers(1, 256, size=(48, 48, 3), dtype=np.uint8)


@pytest.fixture
def sample_rgb_image_f32(sample_rgb_image):
    """Provide the random RGB image as float32.

    :return: synthetic RGB image (float32)
    :rtype: numpy.ndarray
    """
    return sample_rgb_image.astype(np.float32)


# ---------------------------------------------------------------------------
# Synthetic H&E mosaics
# ---------------------------------------------------------------------------


@pytest.fixture
def he_input_image():
    """Provide the synthetic input mosaic (float64, exact densities).

    :return: 32x32x3 float64 image
    :rtype: numpy.ndarray
    """
    return render(INPUT_STAINS, concentration_map())


@pytest.fixture
def he_reference_image():
    """Provide the synthetic reference mosaic (float64).

    Uses the reference stains and a flipped patch layout, so its structure
    differs from the input.

    :return: 32x32x3 float64 image
    :rtype: numpy.ndarray
    """
    return render(REFERENCE_STAINS, concentration_map(flip=True))


@pytest.fixture
def he_expected_image():
    """The input's concentrations rendered with the reference stains (float64).

    :return: 32x32x3 float64 image
    :rtype: numpy.ndarray
    """
    return render(REFERENCE_STAINS, concentration_map())


@pytest.fixture
def he_input_uint8():
    """Provide the synthetic input mosaic quantized to uint8.

    :return: 32x32x3 uint8 image
    :rtype: numpy.ndarray
    """
    return render(INPUT_STAINS, concentration_map(), dtype=np.uint8)


@pytest.fixture
def he_reference_uint8():
    """Provide the synthetic reference mosaic quantized to uint8.

    :return: 32x32x3 uint8 image
    :rtype: numpy.ndarray
    """
    return render(REFERENCE_STAINS, concentration_map(flip=True), dtype=np.uint8)


@pytest.fixture
def he_input_density(he_input_image):
    """Provide the input mosaic as an (N, 3) optical density matrix.

    :return: pixel densities, one row per pixel
    :rtype: numpy.ndarray
    """
    return -np.log(he_input_image.reshape(-1, 3) / 256.0)
