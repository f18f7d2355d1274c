"""
Command line front end
======================

Usage:
  ldhat convert seqs.txt --loc locs.txt --only2 --freqcut 0.05 --prefix out_
  ldhat pairwise --seq sites.txt --loc locs.txt --lk lk.txt --window 50
  ldhat interval --seq sites.txt --loc locs.txt --lk lk.txt --n_update 200000 --r_update 2000 --bpen 5

Each subcommand writes its outputs as ``{prefix}<name>`` files: tab-separated
tables, a JSON run summary and, with ``--plot``, PNG figures.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from ldhat import __version__
from ldhat.configs.run_config import (
    BURNIN, MAXW, NRUN, NSHUFF, RCAT, RMAX, THETA, RunConfig,
)
from ldhat.samplers.rjmcmc import BlockSearch
from ldhat.utils.alignment import AlleleMatrix, Locs, convert
from ldhat.utils.errors import LDhatError, UnsupportedConfiguration
from ldhat.utils.io import (
    read_lk_table, read_locs, read_sites, write_json, write_lk_table,
    write_locs, write_sites, write_table,
)
from ldhat.utils.likelihood_surface import LikelihoodSurface, PairwiseLikelihood, window_estimates
from ldhat.utils.pair_spectrum import PairSpectrum, build_pair_spectrum
from ldhat.utils.statistics import (
    ld_distance_test, pairwise_differences, rmin, watterson_theta,
)
from ldhat.utils.type_def import Ploidy

logger = logging.getLogger('ldhat')


# =============================================================================
# Shared helpers
# =============================================================================

def _configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')


def _output(prefix: str, name: str) -> Path:
    return Path(f'{prefix}{name}')


def _load_data(args) -> Tuple[AlleleMatrix, Locs]:
    matrix = read_sites(args.seq)
    locs = read_locs(args.loc) if args.loc else Locs.contiguous(matrix.n_sites)
    if locs.n_sites != matrix.n_sites:
        raise ValueError(f'locs file has {locs.n_sites} sites, sites file has {matrix.n_sites}')
    return matrix, locs


def _run_config(args, matrix: AlleleMatrix, locs: Locs) -> RunConfig:
    return RunConfig(
        window=args.window,
        ploidy=int(matrix.ploidy),
        model=locs.model.value,
        tract_length=args.tract_length,
        theta=args.theta,
        rcat=args.rcat,
        rmax=args.rmax,
        n_draws=args.n_draws,
        n_shuffle=getattr(args, 'n_shuffle', NSHUFF),
        n_update=getattr(args, 'n_update', 1),
        r_update=getattr(args, 'r_update', 1),
        burnin=getattr(args, 'burnin', 0),
        bpen=getattr(args, 'bpen', 0.0),
        seed=args.seed,
    )


def _surface(args, spectrum: PairSpectrum, cfg: RunConfig) -> LikelihoodSurface:
    if args.lk:
        surface = read_lk_table(args.lk)
        if surface.ploidy is not spectrum.registry.ploidy:
            raise UnsupportedConfiguration(
                f'Likelihood table {args.lk} is {surface.ploidy.name.lower()}, '
                f'data are {spectrum.registry.ploidy.name.lower()}'
            )
        if surface.n_seqs != spectrum.registry.n_seqs:
            logger.warning('Likelihood table is for %d sequences, data have %d',
                           surface.n_seqs, spectrum.registry.n_seqs)
        return surface
    logger.info('No likelihood table given: simulating %d draws per rate', cfg.n_draws)
    surface = LikelihoodSurface.simulate_for(spectrum.registry, cfg)
    write_lk_table(_output(args.prefix, 'new_lk.txt'), surface)
    return surface


def _add_analysis_args(p: argparse.ArgumentParser) -> None:
    p.add_argument('--seq', type=str, required=True, help='Sites file')
    p.add_argument('--loc', type=str, default=None, help='Locs file; contiguous sites if absent')
    p.add_argument('--lk', type=str, default=None,
                   help='Likelihood table; simulated when absent')
    p.add_argument('--window', type=int, default=MAXW, help='Max column distance of a pair')
    p.add_argument('--theta', type=float, default=THETA, help='Theta per site for simulation')
    p.add_argument('--rcat', type=int, default=RCAT, help='Rate categories of a simulated table')
    p.add_argument('--rmax', type=float, default=RMAX, help='Largest rho of a simulated table')
    p.add_argument('--n_draws', type=int, default=NRUN, help='Genealogies per rate in simulation')
    p.add_argument('--tract_length', type=float, default=0.0,
                   help='Mean conversion tract length (model C)')
    p.add_argument('--skip_unsupported', action='store_true',
                   help='Drop site types without usable likelihoods')
    p.add_argument('--skip_invalid', action='store_true',
                   help='Leave pairs with malformed tables unclassified')
    p.add_argument('--prefix', type=str, default='', help='Prefix of output files')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--plot', action='store_true', help='Write PNG figures')


# =============================================================================
# Subcommands
# =============================================================================

def cmd_convert(args) -> int:
    matrix = read_sites(args.seq)
    locs = read_locs(args.loc) if args.loc else None
    site_range = tuple(args.sites) if args.sites else None
    out, out_locs = convert(matrix, locs, only2=args.only2, freqcut=args.freqcut,
                            missfreqcut=args.missfreqcut, site_range=site_range,
                            nout=args.nout, seed=args.seed)
    counts = pd.DataFrame(matrix.allele_count(), columns=['missing', 'T/0', 'C/1', 'A/2', 'G/3'])
    counts.insert(0, 'site', np.arange(1, matrix.n_sites + 1))
    write_table(_output(args.prefix, 'freqs.txt'), counts)
    write_sites(_output(args.prefix, 'sites.txt'), out)
    write_locs(_output(args.prefix, 'locs.txt'), out_locs)
    return 0


def cmd_pairwise(args) -> int:
    matrix, locs = _load_data(args)
    cfg = _run_config(args, matrix, locs)
    on_error = 'skip' if args.skip_invalid else 'raise'
    spectrum = build_pair_spectrum(matrix, cfg.window, on_error=on_error)
    surface = _surface(args, spectrum, cfg)

    curve = surface.log_likelihood_curve(spectrum, skip_unsupported=args.skip_unsupported)
    rho_hat, lk_max = surface.maximize(curve)
    surface.maximize_types(spectrum.registry)
    logger.info('Maximum composite likelihood %.3f at rho = %g', lk_max, rho_hat)

    likelihood = PairwiseLikelihood(surface, spectrum, locs.positions, locs.model,
                                    cfg.tract_length, skip_unsupported=args.skip_unsupported)
    span = locs.positions[-1] - locs.positions[0]
    summary = {
        'n_seqs': matrix.n_seqs,
        'n_sites': matrix.n_sites,
        'ploidy': int(matrix.ploidy),
        'window': cfg.window,
        'n_pairs': spectrum.n_pairs,
        'n_types': spectrum.n_types,
        'skipped_pairs': len(spectrum.errors),
        'degenerate_types': len(spectrum.degenerate_types()),
        'rho': rho_hat,
        'max_loglik': lk_max,
        'theta_per_site': watterson_theta(matrix, locs.length),
        'rmin': rmin(matrix),
    }
    if span > 0 and likelihood.n_pairs:
        per_unit = surface.grid / span
        dist_curve = likelihood.curve(per_unit)
        k = int(np.argmax(dist_curve))
        summary['rate_per_unit'] = float(per_unit[k])
        summary['rate_max_loglik'] = float(dist_curve[k])
    if matrix.ploidy is Ploidy.HAPLOID:
        summary['avpwd'], summary['varpwd'] = pairwise_differences(matrix)
    if args.n_shuffle > 0:
        try:
            test = ld_distance_test(spectrum, locs.positions, args.n_shuffle, cfg.seed)
        except ValueError as e:
            logger.warning('LD/distance test not run: %s', e)
        else:
            summary['ld_distance_corr'] = test.statistic
            summary['ld_distance_p'] = test.p_value

    write_table(_output(args.prefix, 'types.txt'), spectrum.registry)
    write_table(_output(args.prefix, 'curve.txt'),
                pd.DataFrame({'rho': surface.grid, 'loglik': curve}))
    if args.window_sites:
        frame = window_estimates(likelihood, args.window_sites, args.window_step)
        write_table(_output(args.prefix, 'windows.txt'), frame)
        if args.plot:
            from ldhat.utils.plotting import plot_window_estimates
            plot_window_estimates(frame, _output(args.prefix, 'windows.png'))
    write_json(_output(args.prefix, 'summary.json'), summary)
    if args.plot:
        from ldhat.utils.plotting import plot_likelihood_curve
        plot_likelihood_curve(surface.grid, curve, _output(args.prefix, 'curve.png'),
                              rho_hat=rho_hat)
    return 0


def cmd_interval(args) -> int:
    matrix, locs = _load_data(args)
    cfg = _run_config(args, matrix, locs)
    on_error = 'skip' if args.skip_invalid else 'raise'
    spectrum = build_pair_spectrum(matrix, cfg.window, on_error=on_error)
    surface = _surface(args, spectrum, cfg)
    likelihood = PairwiseLikelihood(surface, spectrum, locs.positions, locs.model,
                                    cfg.tract_length, skip_unsupported=args.skip_unsupported)

    search = BlockSearch(likelihood, cfg)
    result = search.run(verbose=not args.quiet)
    frame = search.summary(result)
    write_table(_output(args.prefix, 'rates.txt'), frame)
    write_table(_output(args.prefix, 'final_map.txt'),
                pd.DataFrame(result.final_map.to_list(), columns=['position', 'size', 'rate']))
    write_json(_output(args.prefix, 'summary.json'), {
        'n_intervals': likelihood.n_intervals,
        'n_pairs': likelihood.n_pairs,
        'n_samples': int(result.rate_chain.shape[0]),
        'mean_blocks': float(result.n_blocks_chain.mean()),
        'mean_loglik': float(result.loglik_chain.mean()),
        'acceptance': result.acceptance,
        'bpen': cfg.bpen,
    })
    if args.plot:
        from ldhat.utils.plotting import plot_rate_map
        plot_rate_map(result, locs.positions, _output(args.prefix, 'rates.png'))
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ldhat',
        description='Recombination rate estimation from pairwise composite likelihoods')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Debug logging')
    parser.add_argument('-q', '--quiet', action='store_true', help='Warnings and errors only')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('convert', help='Filter sites and sequences into LDhat format')
    p.add_argument('seq', type=str, help='Input FASTA-style sites file')
    p.add_argument('--loc', type=str, default=None, help='SNP positions; contiguous if absent')
    p.add_argument('--only2', '--2only', dest='only2', action='store_true',
                   help='Only output sites with exactly two alleles')
    p.add_argument('--freqcut', type=float, default=0.0, help='Min minor allele frequency')
    p.add_argument('--missfreqcut', type=float, default=1.0, help='Max missing data frequency')
    p.add_argument('--sites', type=int, nargs=2, default=None, metavar=('START', 'END'),
                   help='Only output sites in [START, END)')
    p.add_argument('--nout', type=int, default=None, help='Number of sequences to output')
    p.add_argument('--prefix', type=str, default='', help='Prefix of output files')
    p.add_argument('--seed', type=int, default=None)
    p.set_defaults(func=cmd_convert)

    p = sub.add_parser('pairwise', help='Composite-likelihood estimate of a constant rate')
    _add_analysis_args(p)
    p.add_argument('--n_shuffle', type=int, default=NSHUFF,
                   help='Permutations in the LD/distance test (0 to skip)')
    p.add_argument('--window_sites', type=int, default=0,
                   help='Sites per sliding window (0 for no windows)')
    p.add_argument('--window_step', type=int, default=None, help='Sliding window step')
    p.set_defaults(func=cmd_pairwise)

    p = sub.add_parser('interval', help='Block-model estimate of variable rates')
    _add_analysis_args(p)
    p.add_argument('--n_update', type=int, default=1_000_000, help='MCMC iterations')
    p.add_argument('--r_update', type=int, default=3000, help='Iterations between samples')
    p.add_argument('--burnin', type=int, default=BURNIN, help='Burn-in iterations')
    p.add_argument('--bpen', type=float, default=5.0, help='Block penalty')
    p.set_defaults(func=cmd_interval)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose, args.quiet)
    try:
        return args.func(args)
    except (LDhatError, ValueError, OSError) as e:
        logger.error('%s', e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
