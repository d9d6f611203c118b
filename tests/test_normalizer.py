# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Tests for spcn.normalizer: reconstruction and the normalizer facade."""

import numpy as np
import pytest
from conftest import INPUT_STAINS, REFERENCE_STAINS

from spcn.errors import ConfigurationError, DegenerateInputWarning, FactorizationStatus
from spcn.factorization import Factorization, compute_factorization
from spcn.normalizer import (
    StructurePreservingNormalizer,
    normalize,
    reconstruct_image,
    reconstruct_pixel,
    reconstruct_region,
)
from spcn.parameters import CostFunction, NormalizationParameters


def _stain_matrix(stains):
    return np.vstack([stains["background"], stains["hematoxylin"], stains["eosin"]])


# ---------------------------------------------------------------------------
# reconstruct_pixel / reconstruct_region
# ---------------------------------------------------------------------------


class TestReconstructPixel:
    """Tests for redrawing a single pixel."""

    def test_swaps_stain_colors(self):
        """A known mixture is redrawn with the reference colors."""
        input_h = _stain_matrix(INPUT_STAINS)
        refer_h = _stain_matrix(REFERENCE_STAINS)
        concentrations = np.array([1.0, 0.3, 0.4])
        pixel = 256.0 * np.exp(-(concentrations @ input_h))
        result = reconstruct_pixel(
            pixel,
            input_h,
            256.0 * np.exp(-input_h[0]),
            refer_h,
            256.0 * np.exp(-refer_h[0]),
        )
        np.testing.assert_allclose(result, 256.0 * np.exp(-(concentrations @ refer_h)))

    def test_background_maps_to_reference_background(self):
        input_h = _stain_matrix(INPUT_STAINS)
        refer_h = _stain_matrix(REFERENCE_STAINS)
        input_unstained = 256.0 * np.exp(-input_h[0])
        refer_unstained = 256.0 * np.exp(-refer_h[0])
        result = reconstruct_pixel(
            input_unstained, input_h, input_unstained, refer_h, refer_unstained
        )
        np.testing.assert_allclose(result, refer_unstained)

    def test_identity(self, rng):
        """Normalizing against the same colors returns the pixel."""
        input_h = _stain_matrix(INPUT_STAINS)
        unstained = 256.0 * np.exp(-input_h[0])
        concentrations = np.array([1.0, 0.2, 0.5])
        pixel = 256.0 * np.exp(-(concentrations @ input_h))
        result = reconstruct_pixel(pixel, input_h, unstained, input_h, unstained)
        np.testing.assert_allclose(result, pixel)

    def test_negative_concentrations_clamped(self):
        """A pixel brighter than the background clamps to zero density."""
        input_h = _stain_matrix(INPUT_STAINS)
        unstained = 256.0 * np.exp(-input_h[0])
        result = reconstruct_pixel(
            np.array([256.0, 256.0, 256.0]), input_h, unstained, input_h, unstained
        )
        assert np.all(result <= 256.0)
        assert np.all(np.isfinite(result))

    def test_mismatched_shapes_raise(self):
        with pytest.raises(ValueError, match="shape"):
            reconstruct_pixel(
                np.ones(3), np.ones((3, 3)), np.ones(3), np.ones((3, 4)), np.ones(4)
            )


class TestReconstructRegion:
    """Tests for redrawing a block of pixels."""

    def test_matches_pixelwise(self, he_input_image):
        input_f = compute_factorization(he_input_image)
        ref_f = Factorization(
            _stain_matrix(REFERENCE_STAINS),
            256.0 * np.exp(-REFERENCE_STAINS["background"]),
            256.0,
        )
        block = he_input_image[5:9, 20:26]
        region = reconstruct_region(block, input_f, ref_f)
        expected = np.array(
            [
                reconstruct_pixel(
                    pixel,
                    input_f.stain_matrix,
                    input_f.unstained_pixel,
                    ref_f.stain_matrix,
                    ref_f.unstained_pixel,
                )
                for pixel in block.reshape(-1, 3)
            ]
        ).reshape(block.shape)
        np.testing.assert_allclose(region, expected, rtol=1e-12)


# ---------------------------------------------------------------------------
# reconstruct_image
# ---------------------------------------------------------------------------


class TestReconstructImage:
    """Tests for tiled, optionally threaded reconstruction."""

    def test_threaded_tiles_match_inline(self, he_input_uint8, he_reference_uint8):
        input_f = compute_factorization(he_input_uint8)
        ref_f = compute_factorization(he_reference_uint8)
        inline = reconstruct_image(he_input_uint8, input_f, ref_f)
        threaded = reconstruct_image(he_input_uint8, input_f, ref_f, max_workers=4, tile_rows=5)
        assert threaded.dtype == np.uint8
        assert np.abs(inline.astype(int) - threaded.astype(int)).max() <= 1

    def test_tiles_cover_uneven_rows(self, he_input_image, he_reference_image):
        input_f = compute_factorization(he_input_image)
        ref_f = compute_factorization(he_reference_image)
        tiled = reconstruct_image(he_input_image, input_f, ref_f, tile_rows=7)
        whole = reconstruct_image(he_input_image, input_f, ref_f, tile_rows=32)
        np.testing.assert_allclose(tiled, whole, rtol=1e-12)

    def test_grayscale_layout_restored(self, rng):
        gray = rng.integers(1, 256, (12, 10), dtype=np.uint8)
        params = NormalizationParameters(
            color_index_suppressed_by_hematoxylin=0, color_index_suppressed_by_eosin=0
        )
        with pytest.warns(DegenerateInputWarning):
            factorization = compute_factorization(gray, params)
        output = reconstruct_image(gray, factorization, factorization)
        assert output.shape == (12, 10)
        assert output.dtype == np.uint8


# ---------------------------------------------------------------------------
# StructurePreservingNormalizer
# ---------------------------------------------------------------------------


class TestNormalizer:
    """End-to-end behaviour of the normalizer."""

    def test_exact_mixtures_redrawn(self, he_input_image, he_reference_image, he_expected_image):
        """Exact stain mixtures are redrawn with the reference stain colors."""
        result = StructurePreservingNormalizer().normalize(he_input_image, he_reference_image)
        assert result.status is FactorizationStatus.OK
        assert not result.degenerate
        np.testing.assert_allclose(result.image, he_expected_image, atol=1e-6)

    def test_identity_uint8(self, he_input_uint8):
        """Normalizing an image against itself returns it (within rounding)."""
        output = normalize(he_input_uint8, he_input_uint8)
        assert output.dtype == np.uint8
        assert np.abs(output.astype(int) - he_input_uint8.astype(int)).max() <= 2

    def test_identity_float(self, he_input_image):
        output = normalize(he_input_image, he_input_image)
        np.testing.assert_allclose(output, he_input_image, atol=1e-6)

    def test_output_dtype_and_shape(self, he_input_uint8, he_reference_uint8):
        output = normalize(he_input_uint8, he_reference_uint8)
        assert output.shape == he_input_uint8.shape
        assert output.dtype == np.uint8

    def test_uint16_output_range(self, he_input_uint8, he_reference_uint8):
        input_image = he_input_uint8.astype(np.uint16) * 256
        reference = he_reference_uint8.astype(np.uint16) * 256
        output = normalize(input_image, reference)
        assert output.dtype == np.uint16
        np.testing.assert_allclose(
            output.astype(float) / 256.0,
            normalize(he_input_uint8, he_reference_uint8).astype(float),
            atol=1.0,
        )

    def test_float32_output(self, he_input_image, he_reference_image):
        output = normalize(he_input_image.astype(np.float32), he_reference_image.astype(np.float32))
        assert output.dtype == np.float32
        assert np.all((output >= 0.0) & (output <= 256.0))

    @pytest.mark.parametrize("cost", list(CostFunction))
    def test_iterations(self, he_input_uint8, he_reference_uint8, cost):
        result = StructurePreservingNormalizer(
            NormalizationParameters(max_number_of_iterations=20, cost_function=cost)
        ).normalize(he_input_uint8, he_reference_uint8)
        assert result.status is FactorizationStatus.OK
        assert result.image.dtype == np.uint8
        assert result.image.shape == he_input_uint8.shape

    def test_threads(self, he_input_uint8, he_reference_uint8):
        inline = normalize(he_input_uint8, he_reference_uint8)
        threaded = StructurePreservingNormalizer(max_workers=3, tile_rows=4).normalize(
            he_input_uint8, he_reference_uint8
        )
        assert np.abs(inline.astype(int) - threaded.image.astype(int)).max() <= 1

    def test_degenerate_input_still_produces_output(self, he_reference_uint8):
        black = np.zeros((16, 16, 3), dtype=np.uint8)
        with pytest.warns(DegenerateInputWarning):
            result = StructurePreservingNormalizer().normalize(black, he_reference_uint8)
        assert result.input_status is FactorizationStatus.DEGENERATE
        assert result.reference_status is FactorizationStatus.OK
        assert result.degenerate
        assert result.image.shape == black.shape
        assert result.image.dtype == np.uint8

    def test_single_color_against_itself(self):
        image = np.empty((8, 8, 3), dtype=np.uint8)
        image[...] = (200, 120, 180)
        with pytest.warns(DegenerateInputWarning):
            output = normalize(image, image)
        assert np.abs(output.astype(int) - image.astype(int)).max() <= 1

    def test_channel_mismatch_raises(self, he_input_uint8):
        with pytest.raises(ConfigurationError, match="channel"):
            normalize(he_input_uint8, he_input_uint8[..., :2])

    def test_channel_index_out_of_range(self, he_input_uint8, he_reference_uint8):
        normalizer = StructurePreservingNormalizer(
            NormalizationParameters(color_index_suppressed_by_hematoxylin=3)
        )
        with pytest.raises(ConfigurationError, match="out of range"):
            normalizer.normalize(he_input_uint8, he_reference_uint8)
        assert sum(normalizer.cache.computations.values()) == 0

    def test_channel_setters(self):
        normalizer = StructurePreservingNormalizer()
        normalizer.color_index_suppressed_by_hematoxylin = 2
        normalizer.color_index_suppressed_by_eosin = 0
        assert normalizer.parameters.color_index_suppressed_by_hematoxylin == 2
        assert normalizer.parameters.color_index_suppressed_by_eosin == 0

    def test_setter_rejects_negative_index(self, he_input_uint8):
        normalizer = StructurePreservingNormalizer()
        normalizer.color_index_suppressed_by_eosin = -1
        with pytest.raises(ConfigurationError):
            normalizer.normalize(he_input_uint8, he_input_uint8)

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_workers": 0}, {"tile_rows": 0}],
    )
    def test_bad_constructor_arguments(self, kwargs):
        with pytest.raises(ConfigurationError):
            StructurePreservingNormalizer(**kwargs)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"epsilon0": 0.0},
            {"lasso_penalty": -1.0},
            {"max_number_of_iterations": -1},
            {"max_number_of_iterations": 2.5},
            {"distinguisher_tolerance": 1.0},
            {"cost_function": "manhattan"},
            {"no_such_parameter": 1},
        ],
    )
    def test_bad_parameters(self, he_input_uint8, overrides):
        with pytest.raises(ConfigurationError):
            normalize(he_input_uint8, he_input_uint8, **overrides)

    def test_compute_factorization_role(self, he_reference_uint8):
        from spcn.cache import Role

        normalizer = StructurePreservingNormalizer()
        factorization = normalizer.compute_factorization(he_reference_uint8, Role.REFERENCE)
        assert normalizer.cache.entry(Role.REFERENCE).factorization is factorization
        assert normalizer.cache.entry(Role.INPUT) is None
