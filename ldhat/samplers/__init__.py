"""Samplers module - reversible-jump MCMC over recombination block maps."""

from ldhat.samplers.rjmcmc import (
    # result container
    BlockSearchResult,
    # kernels
    mh_accept,
    # priors
    log_rate_prior,
    log_map_prior,
    # main function
    run_block_search,
    # convenience
    BlockSearch,
    result_frame,
    DEFAULT_MOVES,
)

__all__ = [
    'BlockSearchResult',
    'mh_accept',
    'log_rate_prior', 'log_map_prior',
    'run_block_search',
    'BlockSearch', 'result_frame', 'DEFAULT_MOVES',
]
