"""
Likelihood Surface
==================

Per site type, a row of natural-log likelihoods over a grid of candidate
pairwise rho values ``rho_k = k * rmax / (rcat - 1)``.

Two composite likelihoods are built on top of the surface:

1. ``LikelihoodSurface.log_likelihood_curve``: the count-weighted sum of
   type rows, ``sum_t count[t] * row(t)[k]``, evaluated on the grid itself.
2. ``PairwiseLikelihood``: per SNP pair, the pairwise rho implied by a
   (possibly varying) per-unit-length rate map and the distance between the
   two sites, looked up by linear interpolation on the grid. This is the
   likelihood the block search evaluates on every proposal; it supports
   re-evaluating only the pairs spanning a changed interval range.

Missing-data fallback
---------------------
A type without a row of its own is resolved deterministically:

1. types with missing data are reduced to their complete sequences and the
   reduced type's row is used if present;
2. a (reduced) type that is not segregating at both sites has a flat row of
   zeros, it carries no information on rho;
3. a smaller sample is marginalised from the complete rows at the surface's
   full sample size ``n``::

       P(s) = sum_t P(t) * sum_{s' in orbit(s)} H(s' | rep(t))

   with ``H`` the multivariate hypergeometric probability of drawing ``s'``
   from the representative configuration of ``t``;
4. anything else raises ``UnsupportedConfiguration``.

A row with no finite value also raises ``UnsupportedConfiguration``.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.special import gammaln, logsumexp

from ldhat.configs.run_config import NRUN, RCAT, RMAX, THETA, RunConfig
from ldhat.utils.coalescent import estimate_log_likelihoods
from ldhat.utils.errors import UnsupportedConfiguration
from ldhat.utils.numba_utils import numba_switchable
from ldhat.utils.pair_spectrum import PairSpectrum
from ldhat.utils.site_types import (
    SiteTypeRegistry,
    canonicalize,
    complete_configuration,
    has_heterozygotes,
    has_missing,
    is_degenerate,
    orbit,
)
from ldhat.utils.type_def import CONFIG_SIZE, Configuration, Model, Ploidy

logger = logging.getLogger(__name__)

__all__ = [
    "LikelihoodSurface",
    "PairwiseLikelihood",
    "WindowEstimate",
    "window_estimates",
    "interpolate_rows",
    "conversion_factor",
]


# ============================================================================
# Kernels
# ============================================================================

@numba_switchable
def interpolate_rows(rows, types, rho, dr):
    """Linear interpolation of type rows at per-pair rho values.

    Values beyond the last grid point are clamped to it. Written as
    ``(1 - f) * a + f * b`` with the exact-grid case handled separately so a
    ``-inf`` neighbour never produces ``nan``.

    Args:
        rows: ``(n_types, rcat)`` float64 log-likelihoods.
        types: ``(n_pairs,)`` int64 row of each pair.
        rho: ``(n_pairs,)`` float64 pairwise rho.
        dr: Grid spacing.
    """
    n = types.shape[0]
    rcat = rows.shape[1]
    out = np.empty(n, dtype=np.float64)
    for p in range(n):
        t = types[p]
        x = rho[p] / dr
        if x >= rcat - 1:
            out[p] = rows[t, rcat - 1]
            continue
        if x < 0.0:
            x = 0.0
        k = int(x)
        f = x - k
        a = rows[t, k]
        if f == 0.0:
            out[p] = a
        else:
            out[p] = (1.0 - f) * a + f * rows[t, k + 1]
    return out


def conversion_factor(distance: NDArray[np.float64], tract_length: float) -> NDArray[np.float64]:
    """Scale from integrated conversion rate to pairwise rho.

    A conversion tract of mean length ``L`` separates two sites ``d`` apart
    with the pairwise rate ``2 gamma L (1 - exp(-d / L))``; relative to the
    integrated rate ``gamma d`` this is ``2 L (1 - exp(-d / L)) / d``, with
    limit 2 at ``d = 0``.
    """
    d = np.asarray(distance, dtype=np.float64)
    factor = np.full(d.shape, 2.0)
    pos = d > 0
    factor[pos] = 2.0 * tract_length * -np.expm1(-d[pos] / tract_length) / d[pos]
    return factor


# ============================================================================
# Surface
# ============================================================================

class LikelihoodSurface:
    """Log-likelihood rows keyed by canonical configuration.

    Args:
        configurations: ``(n_rows, 16)`` configurations (canonicalised on
            construction, any sample size).
        values: ``(n_rows, rcat)`` natural-log likelihoods.
        rmax: Largest rho of the grid.
        n_seqs: Full sample size of the surface (used for marginalisation).
        ploidy: Haploid or diploid data.
        theta: Theta per site the rows were computed for.
    """

    def __init__(
        self,
        configurations,
        values,
        rmax: float,
        n_seqs: int,
        ploidy: Ploidy = Ploidy.HAPLOID,
        theta: float = THETA,
    ) -> None:
        configs = np.asarray(configurations, dtype=np.int64).reshape(-1, CONFIG_SIZE)
        vals = np.array(values, dtype=np.float64, copy=True)
        if vals.ndim != 2 or vals.shape[0] != configs.shape[0]:
            raise ValueError(
                f"values must be (n_rows, rcat), got {vals.shape} for {configs.shape[0]} rows"
            )
        if vals.shape[1] < 2:
            raise ValueError("a surface needs at least 2 rate categories")
        if rmax <= 0:
            raise ValueError(f"rmax must be positive, got {rmax}")

        self.rmax = float(rmax)
        self.n_seqs = int(n_seqs)
        self.ploidy = Ploidy(ploidy)
        self.theta = float(theta)
        self.grid = np.linspace(0.0, self.rmax, vals.shape[1])
        self._rows: Dict[Configuration, int] = {}
        canonical = []
        for r, config in enumerate(configs):
            key = canonicalize(config)
            if key in self._rows:
                raise ValueError(f"duplicate surface row for site type {key}")
            self._rows[key] = r
            canonical.append(key)
        self.configurations = np.asarray(canonical, dtype=np.int64).reshape(-1, CONFIG_SIZE)
        vals.setflags(write=False)
        self.values = vals
        self._resolved: Dict[Configuration, NDArray[np.float64]] = {}

    # ---------- construction ----------
    @classmethod
    def from_simulation(
        cls,
        targets: Iterable[Sequence[int]],
        n_seqs: int,
        ploidy: Ploidy = Ploidy.HAPLOID,
        theta: float = THETA,
        rcat: int = RCAT,
        rmax: float = RMAX,
        n_draws: int = NRUN,
        seed: Optional[int] = None,
    ) -> "LikelihoodSurface":
        """Estimate rows for ``targets`` under the two-locus coalescent.

        Targets are canonicalised, stripped of missing data and grouped by
        sample size; each group is simulated at its own size.
        """
        rng = np.random.default_rng(seed)
        grid = np.linspace(0.0, rmax, rcat)
        groups: Dict[int, List[Configuration]] = {}
        seen = set()
        for config in targets:
            key = canonicalize(complete_configuration(config))
            if key in seen or sum(key) < 2:
                continue
            seen.add(key)
            groups.setdefault(sum(key), []).append(key)

        configs: List[Configuration] = []
        blocks = []
        for size in sorted(groups):
            group = groups[size]
            logger.info("Simulating %d site types of sample size %d", len(group), size)
            blocks.append(estimate_log_likelihoods(group, size, ploidy, grid, theta,
                                                   n_draws, rng))
            configs.extend(group)
        values = np.vstack(blocks) if blocks else np.empty((0, rcat))
        return cls(configs, values, rmax, n_seqs, ploidy, theta)

    @classmethod
    def simulate_for(cls, registry: SiteTypeRegistry, config: RunConfig) -> "LikelihoodSurface":
        """Simulate rows for every informative type of ``registry``."""
        targets = [st.configuration for st in registry
                   if not is_degenerate(complete_configuration(st.configuration),
                                        registry.ploidy)]
        return cls.from_simulation(targets, registry.n_seqs, registry.ploidy,
                                   theta=config.theta, rcat=config.rcat,
                                   rmax=config.rmax, n_draws=config.n_draws,
                                   seed=config.seed)

    # ---------- query API ----------
    @property
    def rcat(self) -> int:
        return int(self.grid.size)

    @property
    def dr(self) -> float:
        return self.rmax / (self.rcat - 1)

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, configuration) -> bool:
        return canonicalize(configuration) in self._rows

    def row(self, configuration) -> NDArray[np.float64]:
        """Log-likelihood row of a configuration, with the missing-data fallback.

        Raises:
            UnsupportedConfiguration: No row can be resolved, or the resolved
                row has no finite value.
        """
        key = canonicalize(configuration)
        cached = self._resolved.get(key)
        if cached is not None:
            return cached
        row = self._resolve(key)
        if not np.isfinite(row).any():
            raise UnsupportedConfiguration(
                f"site type {key} has no finite likelihood at any rate"
            )
        row = np.asarray(row, dtype=np.float64)
        row.setflags(write=False)
        self._resolved[key] = row
        return row

    def _resolve(self, key: Configuration) -> NDArray[np.float64]:
        if self.ploidy is Ploidy.HAPLOID and has_heterozygotes(key):
            raise UnsupportedConfiguration(
                f"site type {key} has heterozygote cells, the surface is haploid"
            )
        r = self._rows.get(key)
        if r is not None:
            return self.values[r]

        reduced = key
        if has_missing(key):
            reduced = canonicalize(complete_configuration(key))
            r = self._rows.get(reduced)
            if r is not None:
                return self.values[r]

        if is_degenerate(reduced, self.ploidy):
            return np.zeros(self.rcat)

        marginal = self._marginalize(reduced)
        if marginal is not None:
            logger.debug("Site type %s marginalised from sample size %d", key, self.n_seqs)
            return marginal
        raise UnsupportedConfiguration(f"no likelihood available for site type {key}")

    def _full_complete_rows(self) -> NDArray[np.int64]:
        totals = self.configurations.sum(axis=1)
        complete = ~np.array([has_missing(c) for c in self.configurations], dtype=bool)
        return np.flatnonzero((totals == self.n_seqs) & complete)

    def _marginalize(self, reduced: Configuration) -> Optional[NDArray[np.float64]]:
        n_sub = sum(reduced)
        if n_sub >= self.n_seqs:
            return None
        idx = self._full_complete_rows()
        if idx.size == 0:
            return None

        full = self.configurations[idx][:, None, :].astype(np.float64)
        images = np.asarray(sorted(orbit(reduced)), dtype=np.float64)[None, :, :]
        feasible = np.all(images <= full, axis=2)
        rest = np.maximum(full - images, 0.0)
        log_h = (gammaln(full + 1) - gammaln(images + 1) - gammaln(rest + 1)).sum(axis=2)
        log_h -= gammaln(self.n_seqs + 1) - gammaln(n_sub + 1) - gammaln(self.n_seqs - n_sub + 1)
        log_h[~feasible] = -np.inf
        if not feasible.any():
            return None

        with np.errstate(divide="ignore", invalid="ignore"):
            inner = logsumexp(log_h, axis=1)
            return logsumexp(self.values[idx] + inner[:, None], axis=0)

    def type_rows(
        self, registry: SiteTypeRegistry, skip_unsupported: bool = False
    ) -> Tuple[NDArray[np.float64], List[int]]:
        """Rows of all registry types, in registry order.

        Returns:
            ``(rows, unsupported)``: ``(n_types, rcat)`` matrix and the
            indices of unsupported types (their rows are ``-inf``).

        Raises:
            UnsupportedConfiguration: The registry and the surface differ in
                ploidy. Rows of one ploidy never stand in for the other.
        """
        if registry.ploidy is not self.ploidy:
            raise UnsupportedConfiguration(
                f"{registry.ploidy.name.lower()} site types cannot be read from a "
                f"{self.ploidy.name.lower()} likelihood surface"
            )
        rows = np.full((len(registry), self.rcat), -np.inf)
        unsupported: List[int] = []
        for st in registry:
            try:
                rows[st.index] = self.row(st.configuration)
            except UnsupportedConfiguration:
                if not skip_unsupported:
                    raise
                unsupported.append(st.index)
        if unsupported:
            logger.warning("Skipped %d unsupported site types (%d pairs)",
                           len(unsupported),
                           sum(registry[i].count for i in unsupported))
        return rows, unsupported

    # ---------- composite likelihood ----------
    def log_likelihood_curve(
        self,
        spectrum: Union[PairSpectrum, SiteTypeRegistry],
        skip_unsupported: bool = False,
    ) -> NDArray[np.float64]:
        """Composite log-likelihood ``sum_t count[t] * row(t)`` over the grid."""
        registry = getattr(spectrum, "registry", spectrum)
        rows, unsupported = self.type_rows(registry, skip_unsupported)
        counts = registry.counts().astype(np.float64)
        if unsupported:
            counts[unsupported] = 0.0
        keep = counts > 0
        if not keep.any():
            return np.zeros(self.rcat)
        return counts[keep] @ rows[keep]

    def maximize(self, curve: NDArray[np.float64]) -> Tuple[float, float]:
        """Grid rate maximising ``curve`` (smallest on ties) and its value."""
        curve = np.asarray(curve, dtype=np.float64)
        if curve.shape != self.grid.shape:
            raise ValueError(f"curve has shape {curve.shape}, grid has {self.grid.shape}")
        k = int(np.argmax(curve))
        return float(self.grid[k]), float(curve[k])

    def maximize_types(self, registry: SiteTypeRegistry, skip_unsupported: bool = True) -> None:
        """Cache ``max_loglik`` / ``rate_at_max`` on every type of ``registry``."""
        rows, unsupported = self.type_rows(registry, skip_unsupported)
        skipped = set(unsupported)
        for st in registry:
            if st.index in skipped:
                continue
            st.rate_at_max, st.max_loglik = self.maximize(rows[st.index])

    def __repr__(self) -> str:
        return (f"LikelihoodSurface(n_rows={len(self)}, rcat={self.rcat}, rmax={self.rmax}, "
                f"n_seqs={self.n_seqs}, ploidy={self.ploidy!r})")


# ============================================================================
# Distance-aware composite likelihood
# ============================================================================

class PairwiseLikelihood:
    """Composite likelihood of a rate map over all classified pairs.

    Args:
        surface: Likelihood surface.
        spectrum: Pair spectrum of the data.
        positions: Position of every column of the source matrix.
        model: Crossing-over or gene conversion.
        tract_length: Mean conversion tract length (gene conversion only).
        skip_unsupported: Drop pairs of unsupported types instead of raising.
    """

    def __init__(
        self,
        surface: LikelihoodSurface,
        spectrum: PairSpectrum,
        positions,
        model: Model = Model.CROSSING_OVER,
        tract_length: float = 0.0,
        skip_unsupported: bool = False,
    ) -> None:
        positions = np.asarray(positions, dtype=np.float64).ravel()
        if positions.size != spectrum.n_sites:
            raise ValueError(f"{positions.size} positions for {spectrum.n_sites} sites")
        if spectrum.n_sites < 2:
            raise ValueError("need at least 2 sites")
        self.model = Model.from_code(model)
        if self.model is Model.GENE_CONVERSION and tract_length <= 0:
            raise ValueError("gene conversion model requires a positive tract_length")

        rows, unsupported = surface.type_rows(spectrum.registry, skip_unsupported)
        usable = spectrum.classified()
        if unsupported:
            usable &= ~np.isin(spectrum.pair_types, unsupported)

        self.surface = surface
        self.rows = np.ascontiguousarray(rows)
        self.positions = positions
        self.lengths = np.diff(positions)
        self.pair_sites = np.ascontiguousarray(spectrum.pair_sites[usable])
        self.pair_types = np.ascontiguousarray(spectrum.pair_types[usable])
        self.unsupported = unsupported
        distance = positions[self.pair_sites[:, 1]] - positions[self.pair_sites[:, 0]]
        if self.model is Model.GENE_CONVERSION:
            self.factor = conversion_factor(distance, tract_length)
        else:
            self.factor = np.ones_like(distance)
        self.distance = distance

    @property
    def n_intervals(self) -> int:
        return int(self.lengths.size)

    @property
    def n_pairs(self) -> int:
        return int(self.pair_types.size)

    def _check_rates(self, rates) -> NDArray[np.float64]:
        rates = np.asarray(rates, dtype=np.float64).ravel()
        if rates.size != self.n_intervals:
            raise ValueError(f"expected {self.n_intervals} interval rates, got {rates.size}")
        return rates

    def pair_rho(self, rates, pairs: Optional[NDArray[np.int64]] = None) -> NDArray[np.float64]:
        """Pairwise rho: integrated rate over each pair's span times the model factor."""
        rates = self._check_rates(rates)
        cum = np.concatenate(([0.0], np.cumsum(rates * self.lengths)))
        sites = self.pair_sites if pairs is None else self.pair_sites[pairs]
        factor = self.factor if pairs is None else self.factor[pairs]
        return (cum[sites[:, 1]] - cum[sites[:, 0]]) * factor

    def pair_logliks(self, rates, pairs: Optional[NDArray[np.int64]] = None) -> NDArray[np.float64]:
        rho = self.pair_rho(rates, pairs)
        types = self.pair_types if pairs is None else self.pair_types[pairs]
        return interpolate_rows(self.rows, np.ascontiguousarray(types), rho, self.surface.dr)

    def total(self, rates) -> float:
        return float(self.pair_logliks(rates).sum())

    def affected_pairs(self, start: int, end: int) -> NDArray[np.int64]:
        """Pairs spanning any interval in ``[start, end)``."""
        return np.flatnonzero((self.pair_sites[:, 0] < end) & (self.pair_sites[:, 1] > start))

    def update(
        self, pair_ll: NDArray[np.float64], rates, start: int, end: int
    ) -> Tuple[NDArray[np.int64], NDArray[np.float64]]:
        """Re-evaluate only the pairs spanning intervals ``[start, end)``.

        Returns:
            ``(pairs, values)``: indices of the affected pairs and their new
            log-likelihoods; ``pair_ll`` is not modified.
        """
        pairs = self.affected_pairs(start, end)
        if pairs.size == 0:
            return pairs, np.empty(0)
        return pairs, self.pair_logliks(rates, pairs)

    def curve(self, rates_per_unit, pairs: Optional[NDArray[np.int64]] = None) -> NDArray[np.float64]:
        """Composite log-likelihood of constant maps at each candidate rate."""
        candidates = np.asarray(rates_per_unit, dtype=np.float64).ravel()
        out = np.empty(candidates.size)
        for c, rate in enumerate(candidates):
            out[c] = self.pair_logliks(np.full(self.n_intervals, rate), pairs).sum()
        return out

    def __repr__(self) -> str:
        return (f"PairwiseLikelihood(n_pairs={self.n_pairs}, n_intervals={self.n_intervals}, "
                f"model={self.model.value})")


# ============================================================================
# Sliding windows
# ============================================================================

class WindowEstimate(NamedTuple):
    """Constant-rate estimate for one window of consecutive sites."""
    start_site: int
    end_site: int          # exclusive
    start_pos: float
    end_pos: float
    n_pairs: int
    rho: float             # over the window span
    rate: float            # per unit length
    max_loglik: float


def window_estimates(
    likelihood: PairwiseLikelihood, width: int, step: Optional[int] = None
) -> pd.DataFrame:
    """Composite estimates over sliding windows of ``width`` sites.

    Candidate window rho values are the surface grid; windows without pairs
    or with zero span are skipped.
    """
    if width < 2:
        raise ValueError(f"window width must be >= 2 sites, got {width}")
    step = width if step is None else int(step)
    if step < 1:
        raise ValueError(f"step must be >= 1, got {step}")
    grid = likelihood.surface.grid
    positions = likelihood.positions
    n_sites = positions.size
    rows: List[WindowEstimate] = []
    for start in range(0, max(n_sites - width, 0) + 1, step):
        end = min(start + width, n_sites)
        pairs = np.flatnonzero((likelihood.pair_sites[:, 0] >= start)
                               & (likelihood.pair_sites[:, 1] < end))
        span = positions[end - 1] - positions[start]
        if pairs.size == 0 or span <= 0:
            continue
        curve = likelihood.curve(grid / span, pairs)
        k = int(np.argmax(curve))
        rows.append(WindowEstimate(start, end, float(positions[start]),
                                   float(positions[end - 1]), int(pairs.size),
                                   float(grid[k]), float(grid[k] / span), float(curve[k])))
    logger.info("Estimated %d windows of %d sites", len(rows), width)
    return pd.DataFrame(rows, columns=WindowEstimate._fields)
