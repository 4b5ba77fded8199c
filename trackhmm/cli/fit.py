#!/usr/bin/env python3
"""
TrackHMM fit CLI entry point.
Fits an HMM to a table of observations by maximum likelihood.
"""

import os
import argparse
import logging
import numpy as np
import pandas as pd

from trackhmm.core.model_io import load_model, save_fit
from trackhmm.inference.estimator import fit
from trackhmm.inference.decoding import viterbi, local_decoding
from trackhmm.inference.smoothing import pseudo_residuals
from trackhmm.inference.covariance import (
    natural_covariance, natural_parameter_labels, natural_parameter_values,
)
from trackhmm.cli.common import (
    add_model_args, add_stationary_args, add_parallel_args, add_output_args,
    add_verbose_args, add_version_args, resolve_cores, setup_logging,
)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Fit a TrackHMM model to time-series observations',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Input:
  CSV/TSV table with one row per time step. Empty cells are missing
  observations. The starting model (JSON) fixes the emission type, the
  number of states and the starting values.

Output:
  fit.json        fitted model with mllk, convergence code, AIC and BIC
  states.tsv      Viterbi and local state decoding (0-based)
  residuals.tsv   ordinary and forecast pseudo-residuals
  covariance.tsv  standard errors and covariance (with --hessian)

Examples:
  # Univariate fit from the 'speed' column
  trackhmm-fit -i track.csv -m start.json -o fit/ --columns speed

  # Bivariate fit with standard errors
  trackhmm-fit -i track.csv -m start.json -o fit/ --columns x y --hessian
'''
    )

    add_version_args(parser)

    parser.add_argument('-i', '--input', required=True,
                        help='Observation table (.csv or .tsv)')
    add_model_args(parser, help_text='Starting model (.json)')
    add_output_args(parser)
    parser.add_argument('--columns', nargs='+', default=None,
                        help='Columns to use as observations (default: all)')
    add_stationary_args(parser)
    parser.add_argument('--hessian', action='store_true',
                        help='Compute the Hessian and write standard errors')
    parser.add_argument('--method', default='L-BFGS-B',
                        help='scipy.optimize.minimize method (default: L-BFGS-B)')
    parser.add_argument('--maxiter', type=int, default=None,
                        help='Maximum optimizer iterations')
    add_parallel_args(parser)
    add_verbose_args(parser)

    return parser.parse_args(argv)


def read_observations(path: str, columns=None) -> pd.DataFrame:
    """Read an observation table; tab-separated for .tsv/.txt, comma otherwise."""
    sep = '\t' if path.endswith(('.tsv', '.txt')) else ','
    table = pd.read_csv(path, sep=sep)
    if columns:
        missing = [c for c in columns if c not in table.columns]
        if missing:
            raise ValueError(f"Columns not found in {path}: {missing}")
        table = table[columns]
    return table.apply(pd.to_numeric, errors='raise')


def observations_for_model(table: pd.DataFrame, model) -> np.ndarray:
    values = table.to_numpy(dtype=float)
    if model.kind == 'norm':
        if values.shape[1] != 1:
            raise ValueError(f"A univariate model needs one column, got {values.shape[1]}; "
                             f"use --columns")
        return values[:, 0]
    return values


def covariance_table(result) -> pd.DataFrame:
    labels = natural_parameter_labels(result.model)
    cov = natural_covariance(result)
    variances = np.diag(cov)
    table = pd.DataFrame({
        'parameter': labels,
        'estimate': natural_parameter_values(result.model),
        'std_error': np.sqrt(np.where(variances >= 0, variances, np.nan)),
    })
    return pd.concat([table, pd.DataFrame(cov, columns=labels)], axis=1)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)
    n_cores = resolve_cores(args.cores)

    os.makedirs(args.output, exist_ok=True)

    print(f"Loading starting model from {args.model}")
    model0 = load_model(args.model)
    print(f"  Model: {model0.kind}, {model0.n_states} states")

    table = read_observations(args.input, args.columns)
    x = observations_for_model(table, model0)
    n_missing = int(np.isnan(x).sum())

    print(f"\nFitting: {args.input}")
    print(f"  Observations: {len(x):,} steps, {table.shape[1]} column(s)")
    if n_missing:
        print(f"  Missing values: {n_missing:,}")
    print(f"  Method: {args.method}")
    print(f"  Cores: {n_cores}")
    print(f"  Output: {args.output}")

    options = {'maxiter': args.maxiter} if args.maxiter else None
    result = fit(x, model0, stationary=args.stationary, hessian=args.hessian,
                 method=args.method, options=options, n_workers=n_cores)

    print(f"\nConvergence code: {result.code} ({'converged' if result.converged else 'NOT converged'})")
    print(f"  -log L: {result.mllk:.4f}")
    print(f"  AIC: {result.aic:.4f}")
    print(f"  BIC: {result.bic:.4f}")

    fit_path = save_fit(result, os.path.join(args.output, 'fit.json'))
    print(f"Fit: {fit_path}")

    states = pd.DataFrame({
        't': np.arange(len(x)),
        'viterbi': viterbi(result.model, x, n_workers=n_cores),
        'local': local_decoding(result.model, x, n_workers=n_cores),
    })
    states_path = os.path.join(args.output, 'states.tsv')
    states.to_csv(states_path, sep='\t', index=False)
    print(f"States: {states_path}")

    residuals = pd.DataFrame({
        't': np.arange(len(x)),
        'ordinary': pseudo_residuals(result.model, x, kind='ordinary', n_workers=n_cores),
        'forecast': pseudo_residuals(result.model, x, kind='forecast', n_workers=n_cores),
    })
    residuals_path = os.path.join(args.output, 'residuals.tsv')
    residuals.to_csv(residuals_path, sep='\t', index=False, na_rep='NA')
    print(f"Residuals: {residuals_path}")

    if args.hessian:
        try:
            cov_table = covariance_table(result)
        except np.linalg.LinAlgError as e:
            logger.warning(f"Could not invert the Hessian, no covariance written: {e}")
        else:
            cov_path = os.path.join(args.output, 'covariance.tsv')
            cov_table.to_csv(cov_path, sep='\t', index=False, na_rep='NA')
            print(f"Covariance: {cov_path}")

    print("\nDone!")


if __name__ == '__main__':
    main()
