"""
Pair Spectrum Builder
=====================

Classifies every pair of eligible sites at most ``window`` columns apart
into the Site-Type Registry.

Counting the 4x4 tables of all pairs is a Numba kernel; classification
(canonicalisation and registry insertion) stays in Python. The builder also
records, for every pair, its two site columns and the index of its type, so
composite likelihoods can later be mapped back to sequence coordinates.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ldhat.utils.alignment import AlleleMatrix
from ldhat.utils.errors import InvalidConfiguration
from ldhat.utils.numba_utils import numba_switchable
from ldhat.utils.site_types import SiteTypeRegistry

logger = logging.getLogger(__name__)

__all__ = ["PairSpectrum", "build_pair_spectrum", "count_pair_tables"]


# ============================================================================
# Kernels
# ============================================================================

@numba_switchable
def count_pair_tables(codes, sites, window):
    """Pair tables of all site pairs within ``window`` columns.

    Args:
        codes: ``(n_seqs, n_sites)`` int64 table codes (0..3).
        sites: Sorted int64 column indices of eligible sites.
        window: Max column distance ``j - i`` of a pair.

    Returns:
        ``(pair_sites, tables)``: ``(n_pairs, 2)`` column indices and
        ``(n_pairs, 16)`` flattened tables, pairs ordered by first then
        second site.
    """
    n_seqs = codes.shape[0]
    n = sites.shape[0]

    n_pairs = 0
    for a in range(n):
        for b in range(a + 1, n):
            if sites[b] - sites[a] > window:
                break
            n_pairs += 1

    pair_sites = np.empty((n_pairs, 2), dtype=np.int64)
    tables = np.zeros((n_pairs, 16), dtype=np.int64)
    p = 0
    for a in range(n):
        i = sites[a]
        for b in range(a + 1, n):
            j = sites[b]
            if j - i > window:
                break
            pair_sites[p, 0] = i
            pair_sites[p, 1] = j
            for s in range(n_seqs):
                tables[p, codes[s, i] * 4 + codes[s, j]] += 1
            p += 1
    return pair_sites, tables


# ============================================================================
# Spectrum
# ============================================================================

class PairSpectrum:
    """Site types of all windowed pairs plus per-pair metadata.

    Attributes:
        registry: Site types with aggregate counts.
        pair_sites: ``(n_pairs, 2)`` site columns of each pair.
        pair_types: Registry index of each pair, -1 for pairs that failed
            classification and were skipped.
        errors: ``(i, j, message)`` for every skipped pair.
        excluded_sites: Columns not eligible for pairwise analysis.
        window: Column window used to form pairs.
        n_sites: Number of columns of the source matrix.
    """

    def __init__(
        self,
        registry: SiteTypeRegistry,
        pair_sites: NDArray[np.int64],
        pair_types: NDArray[np.int64],
        window: int,
        n_sites: int,
        excluded_sites: Optional[NDArray[np.int64]] = None,
        errors: Optional[List[Tuple[int, int, str]]] = None,
    ) -> None:
        self.registry = registry
        self.pair_sites = np.asarray(pair_sites, dtype=np.int64).reshape(-1, 2)
        self.pair_types = np.asarray(pair_types, dtype=np.int64).ravel()
        self.window = int(window)
        self.n_sites = int(n_sites)
        self.excluded_sites = (np.empty(0, dtype=np.int64) if excluded_sites is None
                               else np.asarray(excluded_sites, dtype=np.int64))
        self.errors = list(errors or [])

    @property
    def n_pairs(self) -> int:
        return int(self.pair_types.size)

    @property
    def n_types(self) -> int:
        return len(self.registry)

    def type_counts(self) -> NDArray[np.int64]:
        return self.registry.counts()

    def classified(self) -> NDArray[np.bool_]:
        """Mask of pairs that were classified."""
        return self.pair_types >= 0

    def degenerate_types(self) -> List[int]:
        """Types with no complete sequence pattern segregating at both sites."""
        return [st.index for st in self.registry if st.degenerate]

    def missing_types(self) -> List[int]:
        return [st.index for st in self.registry if st.missing]

    def pair_matrix(self) -> NDArray[np.int64]:
        """``(n_sites, n_sites)`` matrix of 1-based type numbers.

        Entry ``[i, j]`` (``i < j``) holds the type number of pair ``(i, j)``;
        0 for pairs outside the window, involving an excluded site or skipped.
        """
        pij = np.zeros((self.n_sites, self.n_sites), dtype=np.int64)
        ok = self.classified()
        pij[self.pair_sites[ok, 0], self.pair_sites[ok, 1]] = self.pair_types[ok] + 1
        return pij

    def __repr__(self) -> str:
        return (f"PairSpectrum(n_pairs={self.n_pairs}, n_types={self.n_types}, "
                f"window={self.window}, skipped={len(self.errors)})")


def build_pair_spectrum(
    matrix: AlleleMatrix,
    window: int,
    registry: Optional[SiteTypeRegistry] = None,
    on_error: str = "raise",
) -> PairSpectrum:
    """Classify all site pairs at most ``window`` columns apart.

    Args:
        matrix: Allele matrix.
        window: Max column distance between the two sites of a pair.
        registry: Registry to accumulate into; a new one sized for
            ``matrix`` when omitted.
        on_error: ``"raise"`` propagates the first ``InvalidConfiguration``
            (types accumulated so far are kept); ``"skip"`` records the pair
            in ``errors`` and continues.

    Returns:
        PairSpectrum: Registry and per-pair metadata.
    """
    if int(window) < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if on_error not in ("raise", "skip"):
        raise ValueError(f"on_error must be 'raise' or 'skip', got {on_error!r}")
    if registry is None:
        registry = SiteTypeRegistry(matrix.n_seqs, matrix.ploidy)

    eligible = matrix.eligible_sites()
    sites = np.flatnonzero(eligible).astype(np.int64)
    excluded = np.flatnonzero(~eligible).astype(np.int64)
    if excluded.size:
        logger.info("%d of %d sites excluded from pairwise analysis",
                    excluded.size, matrix.n_sites)

    codes = np.ascontiguousarray(matrix.table_codes(), dtype=np.int64)
    pair_sites, tables = count_pair_tables(codes, sites, int(window))

    pair_types = np.full(pair_sites.shape[0], -1, dtype=np.int64)
    errors: List[Tuple[int, int, str]] = []
    for p in range(pair_sites.shape[0]):
        try:
            pair_types[p] = registry.classify(tables[p]).index
        except InvalidConfiguration as e:
            i, j = int(pair_sites[p, 0]), int(pair_sites[p, 1])
            if on_error == "raise":
                logger.error("Classification failed for pair (%d, %d): %s", i, j, e)
                raise
            errors.append((i, j, str(e)))

    if errors:
        logger.warning("Skipped %d of %d pairs with invalid configurations",
                       len(errors), pair_sites.shape[0])
    logger.info("Classified %d pairs into %d site types", pair_sites.shape[0], len(registry))

    spectrum = PairSpectrum(registry, pair_sites, pair_types, window, matrix.n_sites,
                            excluded, errors)
    degenerate = spectrum.degenerate_types()
    if degenerate:
        logger.info("%d site types are degenerate (not segregating at both sites "
                    "among complete sequences)", len(degenerate))
    return spectrum
