"""
Summary Statistics
==================

Classical summaries reported alongside the composite-likelihood estimate:
Watterson's estimator, average pairwise differences, the Hudson-Kaplan
lower bound on recombination events, and a permutation test of the
correlation between LD and physical distance.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ldhat.configs.run_config import NSHUFF
from ldhat.utils.alignment import AlleleMatrix
from ldhat.utils.pair_spectrum import PairSpectrum, build_pair_spectrum
from ldhat.utils.type_def import MISSING, Ploidy

logger = logging.getLogger(__name__)

__all__ = [
    "PermutationTestResult",
    "watterson",
    "watterson_theta",
    "pairwise_differences",
    "incompatible_pairs",
    "rmin",
    "ld_distance_test",
]


class PermutationTestResult(NamedTuple):
    """Observed statistic, permutation p-value and null distribution."""
    statistic: float
    p_value: float
    null: NDArray


def watterson(n: int) -> float:
    """Watterson's ``a_n = sum_{i=1}^{n-1} 1/i``."""
    if n < 2:
        raise ValueError(f"need at least 2 sequences, got {n}")
    return float(np.sum(1.0 / np.arange(1, n)))


def watterson_theta(matrix: AlleleMatrix, length: Optional[float] = None) -> float:
    """Watterson's theta per site: ``S / a_n / length``.

    ``length`` defaults to the number of columns of the matrix.
    """
    segregating = int(matrix.segregating_sites().sum())
    length = float(matrix.n_sites if length is None else length)
    if length <= 0:
        raise ValueError(f"length must be positive, got {length}")
    return segregating / watterson(matrix.n_chromosomes) / length


def pairwise_differences(matrix: AlleleMatrix) -> Tuple[float, float]:
    """Mean and sample variance of differences between all pairs of sequences.

    Only sites called in both sequences of a pair are compared.
    """
    if matrix.ploidy is not Ploidy.HAPLOID:
        raise ValueError("pairwise differences need haploid data")
    if matrix.n_seqs < 2:
        raise ValueError("need at least 2 sequences")
    data = matrix.data
    called = (data != MISSING).astype(np.int64)
    both = called @ called.T
    same = np.zeros_like(both)
    for a in range(4):
        ind = (data == a).astype(np.int64)
        same += ind @ ind.T
    diffs = (both - same)[np.triu_indices(matrix.n_seqs, k=1)].astype(np.float64)
    variance = float(diffs.var(ddof=1)) if diffs.size > 1 else 0.0
    return float(diffs.mean()), variance


def incompatible_pairs(spectrum: PairSpectrum) -> NDArray[np.int64]:
    """``(k, 2)`` site pairs failing the four-gamete test."""
    ok = spectrum.classified()
    rm = np.array([st.min_recombinations for st in spectrum.registry], dtype=np.int64)
    flags = np.zeros(spectrum.n_pairs, dtype=bool)
    flags[ok] = rm[spectrum.pair_types[ok]] == 1
    return spectrum.pair_sites[flags]


def rmin(matrix: AlleleMatrix, spectrum: Optional[PairSpectrum] = None) -> int:
    """Hudson-Kaplan lower bound on the number of recombination events.

    The bound is the largest number of non-overlapping intervals spanned by
    incompatible pairs, found greedily by right end. Without a spectrum all
    pairs of sites are tested.
    """
    if spectrum is None:
        spectrum = build_pair_spectrum(matrix, max(matrix.n_sites - 1, 1), on_error="skip")
    pairs = incompatible_pairs(spectrum)
    if pairs.size == 0:
        return 0
    order = np.lexsort((pairs[:, 0], pairs[:, 1]))
    count = 0
    last_end = -1
    for i, j in pairs[order]:
        if i >= last_end:
            count += 1
            last_end = j
    return count


def ld_distance_test(
    spectrum: PairSpectrum,
    positions: NDArray[np.float64],
    n_shuffle: int = NSHUFF,
    seed: Optional[int] = None,
) -> PermutationTestResult:
    """Permutation test for a negative correlation of r2 with distance.

    Site positions are shuffled among the sites of the spectrum; the p-value
    is the fraction of permutations (observed included) whose correlation is
    at most the observed one.
    """
    positions = np.asarray(positions, dtype=np.float64)
    ok = spectrum.classified()
    degenerate = np.array([st.degenerate for st in spectrum.registry], dtype=bool)
    if degenerate.size:
        ok[ok] &= ~degenerate[spectrum.pair_types[ok]]
    pairs = spectrum.pair_sites[ok]
    if pairs.shape[0] < 3:
        raise ValueError("need at least 3 informative pairs")
    r2 = np.array([st.ld_stats[0] for st in spectrum.registry])[spectrum.pair_types[ok]]

    def _corr(pos):
        dist = np.abs(pos[pairs[:, 1]] - pos[pairs[:, 0]])
        if np.std(dist) == 0 or np.std(r2) == 0:
            return np.nan
        return float(np.corrcoef(r2, dist)[0, 1])

    observed = _corr(positions)
    rng = np.random.default_rng(seed)
    sites = np.unique(pairs)
    null = np.empty(n_shuffle)
    shuffled = positions.copy()
    for s in range(n_shuffle):
        shuffled[sites] = rng.permutation(positions[sites])
        null[s] = _corr(shuffled)
    finite = null[np.isfinite(null)]
    if np.isnan(observed):
        p_value = np.nan
    else:
        p_value = (1 + int(np.sum(finite <= observed))) / (finite.size + 1)
    logger.info("LD/distance correlation %.4f, permutation p = %.4g", observed, p_value)
    return PermutationTestResult(observed, float(p_value), null)
