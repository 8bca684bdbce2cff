"""
Run the SEM / Mixed Model Equivalence Study
===========================================

Simulates every configured scenario, fits the constrained latent growth
SEM (semopy) and the heterogeneous-variance mixed model (statsmodels),
compares the two and writes CSV tables, LaTeX fragments, figures and
output/report.tex.

Usage:
    python run_study.py
    python run_study.py --scenario intercept_slope --replications 50
    python run_study.py --config config/study_config.json --output output --skip-plots
"""

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from lmmsem.analysis.equivalence_study import run_study
from lmmsem.utils.config_schema import load_config
from lmmsem.utils.logging_config import configure_warnings, get_logger, setup_logging

logger = get_logger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Compare random intercept/slope mixed models with constrained SEM')
    parser.add_argument('--config', type=str, default='config/study_config.json',
                        help='Path to study config JSON')
    parser.add_argument('--output', type=str, default=None,
                        help='Output directory (default: study.output_dir from config)')
    parser.add_argument('--scenario', action='append', default=None,
                        help='Scenario to run (repeatable, default: all)')
    parser.add_argument('--replications', type=int, default=None,
                        help='Replications per scenario (overrides config)')
    parser.add_argument('--quiet', action='store_true',
                        help='Only log, do not print progress')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Write a detailed log to this file')
    parser.add_argument('--debug-warnings', action='store_true',
                        help='Show optimizer and convergence warnings')
    parser.add_argument('--skip-plots', action='store_true',
                        help='Do not write figures')
    parser.add_argument('--skip-cleanup', action='store_true',
                        help='Keep existing files in the output directory')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    setup_logging(level=logging.WARNING if args.quiet else logging.INFO,
                  log_file=args.log_file)
    configure_warnings(debug_mode=args.debug_warnings)

    if args.replications is not None and args.replications < 0:
        logger.error("--replications must be >= 0")
        return 2

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 2

    results = run_study(
        config,
        output_dir=Path(args.output) if args.output else None,
        scenarios=args.scenario,
        n_replications=args.replications,
        make_plots=not args.skip_plots,
        cleanup=not args.skip_cleanup,
        verbose=not args.quiet,
    )

    failed = [name for name, r in results.items() if not r.equivalent]
    if failed:
        logger.warning(f"Scenarios without equivalent predictions: {failed}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
