"""Shared argparse argument factories for TrackHMM CLI tools.

Each function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse
import logging
import multiprocessing
import sys


def add_model_args(parser: argparse.ArgumentParser,
                   help_text: str = "Model JSON file") -> None:
    """Add -m/--model argument."""
    parser.add_argument(
        '-m', '--model', required=True,
        help=help_text
    )


def add_stationary_args(parser: argparse.ArgumentParser) -> None:
    """Add --stationary/--free-delta (mutually exclusive; default: as stored in the model)."""
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        '--stationary', dest='stationary', action='store_const', const=True, default=None,
        help="Initial distribution is the stationary distribution of gamma"
    )
    group.add_argument(
        '--free-delta', dest='stationary', action='store_const', const=False,
        help="Estimate the initial distribution as a free parameter"
    )


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_cores: int = 1) -> None:
    """Add --cores argument."""
    parser.add_argument(
        '--cores', '-c', type=int, default=default_cores,
        help=f"Number of CPU cores (0=auto, default: {default_cores})"
    )


def add_seed_args(parser: argparse.ArgumentParser,
                  default: int = None) -> None:
    """Add --seed argument."""
    parser.add_argument(
        '--seed', type=int, default=default,
        help="Random seed (default: fresh entropy)"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output directory") -> None:
    """Add -o/--output argument."""
    parser.add_argument(
        '-o', '--output', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from trackhmm import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )


def resolve_cores(cores: int) -> int:
    """Map --cores 0 to the machine's CPU count."""
    if cores == 0:
        n_cores = multiprocessing.cpu_count()
        print(f"Auto-detected {n_cores} CPU cores")
        return n_cores
    if cores < 0:
        raise ValueError(f"--cores must be >= 0, got {cores}")
    return cores


def setup_logging(verbose: bool = False) -> None:
    """Log to stdout with bare messages; DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )
