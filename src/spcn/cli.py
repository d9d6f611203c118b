# SPDX-FileCopyrightText: 2024-present barrettMCW <mjbarrett@mcw.edu>
#
# SPDX-License-Identifier: MIT
"""Command-line interface: normalize one image file against a reference."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from spcn.__about__ import __version__
from spcn.errors import NumericalFailureError
from spcn.io import read_image, write_image
from spcn.normalizer import StructurePreservingNormalizer
from spcn.parameters import CostFunction, NormalizationParameters

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spcn",
        description="Structure-preserving color normalization of H&E images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Redraw input.png with the stain colors of reference.png
  spcn input.png reference.png output.png

  # Refine the stain colors with 100 KL-divergence iterations
  spcn input.png reference.png output.png --iterations 100 --cost kl
        """,
    )
    parser.add_argument("input", help="Image providing the tissue structure")
    parser.add_argument("reference", help="Image providing the stain colors")
    parser.add_argument("output", help="Where to write the normalized image")

    parser.add_argument(
        "--hematoxylin-channel",
        type=int,
        default=0,
        help="Channel index suppressed by hematoxylin (default: 0, red)",
    )
    parser.add_argument(
        "--eosin-channel",
        type=int,
        default=1,
        help="Channel index suppressed by eosin (default: 1, green)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Non-negative matrix factorization iterations (default: 0)",
    )
    parser.add_argument(
        "--cost",
        choices=[cost.value for cost in CostFunction],
        default=CostFunction.EUCLIDEAN.value,
        help="Factorization cost function",
    )
    parser.add_argument(
        "--lasso-penalty",
        type=float,
        default=0.02,
        help="L1 penalty on the stain concentrations (default: 0.02)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Threads used for reconstruction (default: 1)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    levels = [logging.WARNING, logging.INFO, logging.DEBUG]
    logging.basicConfig(
        level=levels[min(args.verbose, len(levels) - 1)],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        parameters = NormalizationParameters(
            color_index_suppressed_by_hematoxylin=args.hematoxylin_channel,
            color_index_suppressed_by_eosin=args.eosin_channel,
            max_number_of_iterations=args.iterations,
            cost_function=args.cost,
            lasso_penalty=args.lasso_penalty,
        )
        normalizer = StructurePreservingNormalizer(parameters, max_workers=args.workers)
        result = normalizer.normalize(read_image(args.input), read_image(args.reference))
        path = write_image(args.output, result.image)
    except (NumericalFailureError, OSError, ValueError) as exc:
        logger.error("normalization failed: %s", exc)
        return 1

    logger.info("wrote %s (status: %s)", path, result.status.value)
    return 0


if __name__ == "__main__":
    sys.exit(main())
