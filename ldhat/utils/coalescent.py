"""
Two-Locus Coalescent Sampler
============================

Monte Carlo estimation of pairwise-configuration likelihoods under the
two-locus coalescent with recombination, used to build a likelihood surface
when no table is supplied.

For each candidate rho, genealogies are drawn from the coalescent prior
(time in units of 2N generations, coalescence at rate ``k(k - 1)/2``,
recombination at rate ``rho/2`` per lineage carrying material at both
loci). Given the two marginal trees, a configuration arises when exactly one
mutation (rate ``theta/2`` per unit branch length) falls on each tree; a
branch pair ``(a, b)`` with lengths ``la``, ``lb`` and total tree lengths
``LA``, ``LB`` contributes

    (theta/2)^2 * la * lb * exp(-theta (LA + LB) / 2)

to the configuration induced by the leaves below ``a`` and ``b``. The
likelihood of a site type is the average contribution over draws, summed
over all labellings in its orbit.

Leaf sets are Python ints used as bitsets; a lineage drops a locus once it
carries all leaves at that locus (the locus has found its MRCA).
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from ldhat.utils.site_types import orbit
from ldhat.utils.type_def import CODE_HET, Configuration, Ploidy

logger = logging.getLogger(__name__)

__all__ = [
    "simulate_marginal_trees",
    "branch_leaf_matrix",
    "branch_pair_configurations",
    "estimate_log_likelihoods",
]


# ============================================================================
# Genealogies
# ============================================================================

def simulate_marginal_trees(
    n: int, rho: float, rng: np.random.Generator
) -> Tuple[Dict[int, float], Dict[int, float]]:
    """Draw one two-locus genealogy and return the branches of both trees.

    Args:
        n: Number of sampled chromosomes (>= 2).
        rho: Population recombination rate between the two loci.
        rng: Random generator.

    Returns:
        ``(branches_a, branches_b)``: leaf bitset -> branch length for the
        marginal trees at locus A and locus B.
    """
    if n < 2:
        raise ValueError(f"need at least 2 chromosomes, got {n}")
    full = (1 << n) - 1
    lineages: List[List[int]] = [[1 << i, 1 << i] for i in range(n)]
    branches_a: Dict[int, float] = {}
    branches_b: Dict[int, float] = {}

    while lineages:
        k = len(lineages)
        n_both = sum(1 for a, b in lineages if a and b)
        rate_c = 0.5 * k * (k - 1)
        rate_r = 0.5 * rho * n_both
        total = rate_c + rate_r
        dt = rng.exponential(1.0 / total)
        for a, b in lineages:
            if a:
                branches_a[a] = branches_a.get(a, 0.0) + dt
            if b:
                branches_b[b] = branches_b.get(b, 0.0) + dt

        if rng.random() * total < rate_c:
            i, j = rng.choice(k, size=2, replace=False)
            a = lineages[i][0] | lineages[j][0]
            b = lineages[i][1] | lineages[j][1]
            for idx in sorted((int(i), int(j)), reverse=True):
                del lineages[idx]
            a = 0 if a == full else a
            b = 0 if b == full else b
            if a or b:
                lineages.append([a, b])
        else:
            both = [idx for idx, (a, b) in enumerate(lineages) if a and b]
            idx = both[int(rng.integers(len(both)))]
            a, b = lineages[idx]
            lineages[idx] = [a, 0]
            lineages.append([0, b])

    return branches_a, branches_b


def branch_leaf_matrix(masks: Sequence[int], n: int) -> NDArray[np.int64]:
    """``(n_branches, n)`` 0/1 matrix of the leaves below each branch."""
    n_bytes = (n + 7) // 8
    rows = [
        np.unpackbits(np.frombuffer(m.to_bytes(n_bytes, "little"), dtype=np.uint8),
                      bitorder="little")[:n]
        for m in masks
    ]
    return np.asarray(rows, dtype=np.int64).reshape(len(rows), n)


def _genotype_codes(leaves: NDArray[np.int64]) -> NDArray[np.int64]:
    """Pair chromosomes (2i, 2i+1) into genotype codes 0, 1 (hom) and 2 (het)."""
    dosage = leaves[:, 0::2] + leaves[:, 1::2]
    codes = np.where(dosage == 2, 1, dosage)
    codes[dosage == 1] = CODE_HET
    return codes


def branch_pair_configurations(
    leaves_a: NDArray[np.int64], leaves_b: NDArray[np.int64], ploidy: Ploidy
) -> NDArray[np.int64]:
    """Configurations induced by every (branch at A, branch at B) pair.

    Returns:
        ``(n_a * n_b, 16)`` configurations, row ``i * n_b + j`` for branch
        ``i`` at A and branch ``j`` at B. Code 1 marks carriers of the
        mutation.
    """
    n_a, n_b = leaves_a.shape[0], leaves_b.shape[0]
    configs = np.zeros((n_a, n_b, 16), dtype=np.int64)

    if Ploidy(ploidy) is Ploidy.HAPLOID:
        n = leaves_a.shape[1]
        n11 = leaves_a @ leaves_b.T
        n1x = leaves_a.sum(axis=1)[:, None]
        nx1 = leaves_b.sum(axis=1)[None, :]
        configs[:, :, 5] = n11
        configs[:, :, 4] = n1x - n11
        configs[:, :, 1] = nx1 - n11
        configs[:, :, 0] = n - n1x - nx1 + n11
        return configs.reshape(n_a * n_b, 16)

    geno_a = _genotype_codes(leaves_a)
    geno_b = _genotype_codes(leaves_b)
    for ca in range(3):
        ind_a = (geno_a == ca).astype(np.int64)
        for cb in range(3):
            ind_b = (geno_b == cb).astype(np.int64)
            configs[:, :, ca * 4 + cb] = ind_a @ ind_b.T
    return configs.reshape(n_a * n_b, 16)


# ============================================================================
# Likelihood estimation
# ============================================================================

def _orbit_lookup(targets: Sequence[Configuration]) -> Dict[Configuration, int]:
    lookup: Dict[Configuration, int] = {}
    for t, config in enumerate(targets):
        for image in orbit(config):
            lookup[image] = t
    return lookup


def estimate_log_likelihoods(
    targets: Sequence[Configuration],
    n_seqs: int,
    ploidy: Ploidy,
    rho_grid: NDArray[np.float64],
    theta: float,
    n_draws: int,
    rng: np.random.Generator,
) -> NDArray[np.float64]:
    """Monte Carlo log-likelihoods of ``targets`` over ``rho_grid``.

    Args:
        targets: Canonical complete configurations, all summing to
            ``n_seqs``.
        n_seqs: Sample size (individuals for diploid data).
        ploidy: Haploid or diploid data.
        rho_grid: Candidate pairwise rho values.
        theta: Population mutation rate per site.
        n_draws: Genealogies per grid value.
        rng: Random generator.

    Returns:
        ``(len(targets), len(rho_grid))`` natural-log likelihoods; ``-inf``
        where no draw produced the configuration.
    """
    ploidy = Ploidy(ploidy)
    if n_draws < 1:
        raise ValueError(f"n_draws must be >= 1, got {n_draws}")
    if theta <= 0:
        raise ValueError(f"theta must be positive, got {theta}")
    for config in targets:
        if sum(config) != n_seqs:
            raise ValueError(f"target {config} does not sum to {n_seqs}")

    n_chrom = n_seqs * int(ploidy)
    lookup = _orbit_lookup(targets)
    half_theta = 0.5 * theta
    sums = np.zeros((len(targets), len(rho_grid)), dtype=np.float64)

    for g, rho in enumerate(rho_grid):
        for _ in range(n_draws):
            branches_a, branches_b = simulate_marginal_trees(n_chrom, float(rho), rng)
            masks_a = list(branches_a)
            masks_b = list(branches_b)
            len_a = np.fromiter(branches_a.values(), dtype=np.float64, count=len(masks_a))
            len_b = np.fromiter(branches_b.values(), dtype=np.float64, count=len(masks_b))
            scale = half_theta * half_theta * np.exp(-half_theta * (len_a.sum() + len_b.sum()))
            weights = scale * np.outer(len_a, len_b).ravel()

            configs = branch_pair_configurations(
                branch_leaf_matrix(masks_a, n_chrom),
                branch_leaf_matrix(masks_b, n_chrom),
                ploidy,
            )
            unique, inverse = np.unique(configs, axis=0, return_inverse=True)
            target_of = np.array([lookup.get(tuple(row), -1) for row in unique.tolist()],
                                 dtype=np.int64)
            hit = target_of[inverse.ravel()]
            ok = hit >= 0
            if ok.any():
                sums[:, g] += np.bincount(hit[ok], weights=weights[ok],
                                          minlength=len(targets))
        logger.debug("rho=%g: %d of %d targets observed", rho,
                     int((sums[:, g] > 0).sum()), len(targets))

    with np.errstate(divide="ignore"):
        values = np.log(sums / n_draws)
    logger.info("Estimated %d configurations over %d rho values with %d draws each",
                len(targets), len(rho_grid), n_draws)
    return values
