# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Structure-preserving color normalization of H&E histology images.

Each image is factorized into a small stain color matrix (background,
hematoxylin, eosin) and per-pixel stain concentrations by sparse
non-negative matrix factorization.  The input image is then redrawn with
its own concentrations and the reference image's stain colors, which
normalizes the staining while preserving the tissue structure.

Example::

    from spcn import StructurePreservingNormalizer, read_image, write_image

    normalizer = StructurePreservingNormalizer()
    reference = read_image("reference.png")
    for name in ("a.png", "b.png"):
        # the reference is only factorized once
        result = normalizer.normalize(read_image(name), reference)
        write_image(f"normalized-{name}", result.image)
"""

from spcn.__about__ import __version__
from spcn.cache import FactorizationCache, ImageKey, Role, SourceImage
from spcn.deconvolution import (
    as_channel_image,
    density_to_intensity,
    image_to_matrix,
    intensity_to_density,
)
from spcn.errors import (
    ConfigurationError,
    DegenerateInputWarning,
    FactorizationStatus,
    NumericalFailureError,
)
from spcn.factorization import Factorization, compute_factorization
from spcn.io import read_image, write_image
from spcn.normalizer import (
    NormalizationResult,
    StructurePreservingNormalizer,
    normalize,
    reconstruct_image,
    reconstruct_pixel,
    reconstruct_region,
)
from spcn.parameters import NUMBER_OF_STAINS, CostFunction, NormalizationParameters
from spcn.stains import identify_stains

__all__ = [
    "NUMBER_OF_STAINS",
    "ConfigurationError",
    "CostFunction",
    "DegenerateInputWarning",
    "Factorization",
    "FactorizationCache",
    "FactorizationStatus",
    "ImageKey",
    "NormalizationParameters",
    "NormalizationResult",
    "NumericalFailureError",
    "Role",
    "SourceImage",
    "StructurePreservingNormalizer",
    "__version__",
    "as_channel_image",
    "compute_factorization",
    "density_to_intensity",
    "identify_stains",
    "image_to_matrix",
    "intensity_to_density",
    "normalize",
    "read_image",
    "reconstruct_image",
    "reconstruct_pixel",
    "reconstruct_region",
    "write_image",
]
