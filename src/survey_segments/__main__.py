"""
Command-line entry point.

Usage:
  python -m survey_segments DATA.csv [--seed 42] [--k-min 2] [--k-max 6]
      [--n-init 10] [--output-dir results/]
"""

import argparse
import logging
import sys

from .config import get_settings
from .pipeline import export_results, result_tables, run_analysis


logger = logging.getLogger("survey_segments")


def parse_args(argv=None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Latent class segmentation of a consumer survey with a k-modes baseline"
    )
    parser.add_argument("data", help="Raw survey CSV (header row, then a tag row)")
    parser.add_argument("--seed", type=int, default=settings.seed)
    parser.add_argument("--k-min", type=int, default=settings.k_min,
                        help=f"Smallest class count (default {settings.k_min})")
    parser.add_argument("--k-max", type=int, default=settings.k_max,
                        help=f"Largest class count (default {settings.k_max})")
    parser.add_argument("--n-init", type=int, default=settings.lca_n_init,
                        help=f"LCA random restarts per K (default {settings.lca_n_init})")
    parser.add_argument("--output-dir", default=None, help="Write result tables as CSV here")
    parser.add_argument("--log-level", default=settings.log_level)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.k_min > args.k_max:
        logger.error(f"--k-min ({args.k_min}) must not exceed --k-max ({args.k_max})")
        return 2

    settings = get_settings().model_copy(update={
        'seed': args.seed,
        'k_min': args.k_min,
        'k_max': args.k_max,
        'lca_n_init': args.n_init,
        'log_level': args.log_level,
    })

    try:
        results = run_analysis(args.data, settings)
    except ValueError as e:
        logger.error(f"Invalid survey data: {e}")
        return 1

    for name, table in result_tables(results).items():
        logger.info(f"{name}:\n{table.to_string(index=False)}")

    if args.output_dir:
        export_results(results, args.output_dir)

    return 0 if results['selection']['n_classes'] is not None else 3


if __name__ == "__main__":
    sys.exit(main())
