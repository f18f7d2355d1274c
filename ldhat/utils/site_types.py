"""
Site-Type Registry
==================

Canonical classification of pairwise (two-site) configurations.

A configuration is the 4x4 contingency table of table codes at two sites,
flattened row-major into 16 counts. Codes 0 and 1 are the two alleles (for
diploid data the two homozygotes), 2 is the heterozygote and 3 a missing
call.

Two configurations are the same site type when one can be turned into the
other by relabelling the alleles at either site and/or swapping the two
sites. The 8 images of a configuration under these operations form its
orbit; the lexicographically smallest image is its canonical form.
Heterozygote and missing codes are fixed under allele relabelling, so for
diploid data the phase ambiguity of a genotype is carried by the
heterozygote code itself.

The registry deduplicates canonical forms with a dict and keeps a parallel
list in insertion order, so the order of types (and of every likelihood sum
taken over them) is reproducible.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from ldhat.utils.errors import InvalidConfiguration
from ldhat.utils.type_def import (
    CODE_HET,
    CODE_MISSING,
    CONFIG_SIZE,
    N_CODES,
    Configuration,
    Ploidy,
)

logger = logging.getLogger(__name__)

__all__ = [
    "SiteType",
    "SiteTypeRegistry",
    "canonicalize",
    "orbit",
    "four_gamete_test",
    "ld_statistics",
    "haplotype_frequencies",
    "complete_configuration",
    "is_degenerate",
    "has_missing",
    "has_heterozygotes",
]


# ============================================================================
# Symmetry group
# ============================================================================

def _build_symmetry_index() -> NDArray[np.int64]:
    """Gather indices of the 8 symmetry images: ``image = config[index[g]]``."""
    swap = (1, 0, 2, 3)
    keep = (0, 1, 2, 3)
    rows = []
    for transpose in (False, True):
        for perm_a in (keep, swap):
            for perm_b in (keep, swap):
                idx = []
                for a in range(N_CODES):
                    for b in range(N_CODES):
                        if transpose:
                            idx.append(perm_a[b] * N_CODES + perm_b[a])
                        else:
                            idx.append(perm_a[a] * N_CODES + perm_b[b])
                rows.append(idx)
    return np.asarray(rows, dtype=np.int64)


_SYMMETRY_INDEX = _build_symmetry_index()

_MISSING_CELLS = np.array(
    [a * N_CODES + b for a in range(N_CODES) for b in range(N_CODES)
     if a == CODE_MISSING or b == CODE_MISSING],
    dtype=np.int64,
)
_HET_CELLS = np.array(
    [a * N_CODES + b for a in range(N_CODES) for b in range(N_CODES)
     if a == CODE_HET or b == CODE_HET],
    dtype=np.int64,
)


def orbit(configuration: Sequence[int]) -> Set[Configuration]:
    """All distinct images of ``configuration`` under the symmetry group."""
    arr = np.asarray(configuration, dtype=np.int64)
    return {tuple(row) for row in arr[_SYMMETRY_INDEX].tolist()}


def canonicalize(configuration: Sequence[int]) -> Configuration:
    """Lexicographically smallest image of ``configuration``."""
    arr = np.asarray(configuration, dtype=np.int64)
    return min(tuple(row) for row in arr[_SYMMETRY_INDEX].tolist())


# ============================================================================
# Per-configuration properties
# ============================================================================

def has_missing(configuration: Sequence[int]) -> bool:
    arr = np.asarray(configuration, dtype=np.int64)
    return bool(arr[_MISSING_CELLS].sum() > 0)


def has_heterozygotes(configuration: Sequence[int]) -> bool:
    arr = np.asarray(configuration, dtype=np.int64)
    return bool(arr[_HET_CELLS].sum() > 0)


def complete_configuration(configuration: Sequence[int]) -> Configuration:
    """Drop every sequence with a missing call at either site."""
    arr = np.array(configuration, dtype=np.int64)
    arr[_MISSING_CELLS] = 0
    return tuple(arr.tolist())


def _implied_gametes(table: NDArray, ploidy: Ploidy) -> Set[Tuple[int, int]]:
    gametes = set()
    if ploidy is Ploidy.HAPLOID:
        for a in (0, 1):
            for b in (0, 1):
                if table[a, b] > 0:
                    gametes.add((a, b))
        return gametes

    for a in (0, 1):
        for b in (0, 1):
            if table[a, b] > 0:
                gametes.add((a, b))
        # homozygote at A, heterozygote at B: both a0 and a1 are present
        if table[a, CODE_HET] > 0:
            gametes.update(((a, 0), (a, 1)))
    for b in (0, 1):
        if table[CODE_HET, b] > 0:
            gametes.update(((0, b), (1, b)))
    # double heterozygotes are phase-ambiguous and imply nothing
    return gametes


def four_gamete_test(configuration: Sequence[int], ploidy: Ploidy = Ploidy.HAPLOID) -> int:
    """Minimum number of recombination events (0 or 1) for one site pair.

    Returns 1 iff all four gametes 00, 01, 10 and 11 are implied by complete
    observations. Cells involving a missing call never contribute.
    """
    table = np.asarray(configuration, dtype=np.int64).reshape(N_CODES, N_CODES)
    return int(len(_implied_gametes(table, Ploidy(ploidy))) == 4)


def is_degenerate(configuration: Sequence[int], ploidy: Ploidy = Ploidy.HAPLOID) -> bool:
    """True when the complete sequences are not polymorphic at both sites."""
    table = np.asarray(configuration, dtype=np.int64).reshape(N_CODES, N_CODES)[:3, :3]
    if Ploidy(ploidy) is Ploidy.HAPLOID:
        rows = table[:2, :2].sum(axis=1)
        cols = table[:2, :2].sum(axis=0)
        return not (np.all(rows > 0) and np.all(cols > 0))

    def _segregating(margin):
        return margin[CODE_HET] > 0 or (margin[0] > 0 and margin[1] > 0)

    return not (_segregating(table.sum(axis=1)) and _segregating(table.sum(axis=0)))


def haplotype_frequencies(
    configuration: Sequence[int],
    ploidy: Ploidy = Ploidy.HAPLOID,
    max_iter: int = 200,
    tol: float = 1e-10,
) -> NDArray[np.float64]:
    """Estimate the frequencies of haplotypes 00, 01, 10, 11.

    Haploid data are counted directly. For diploid data every genotype
    except the double heterozygote resolves into two known haplotypes; the
    double heterozygotes are split between the 00/11 and 01/10 phases by EM.

    Returns:
        Array ``[f00, f01, f10, f11]``; all zeros when no complete sequence
        is available.
    """
    table = np.asarray(configuration, dtype=np.float64).reshape(N_CODES, N_CODES)
    if Ploidy(ploidy) is Ploidy.HAPLOID:
        known = table[:2, :2].ravel().copy()
        total = known.sum()
        return known / total if total > 0 else np.zeros(4)

    known = np.zeros(4)
    for a in (0, 1):
        for b in (0, 1):
            known[2 * a + b] += 2.0 * table[a, b]
        known[2 * a + 0] += table[a, CODE_HET]
        known[2 * a + 1] += table[a, CODE_HET]
    for b in (0, 1):
        known[0 * 2 + b] += table[CODE_HET, b]
        known[1 * 2 + b] += table[CODE_HET, b]
    n_dh = table[CODE_HET, CODE_HET]
    total = known.sum() + 2.0 * n_dh
    if total == 0:
        return np.zeros(4)

    freqs = (known + 0.5 * n_dh) / total
    for _ in range(max_iter):
        coupling = freqs[0] * freqs[3]
        repulsion = freqs[1] * freqs[2]
        denom = coupling + repulsion
        share = 0.5 if denom == 0 else coupling / denom
        counts = known.copy()
        counts[[0, 3]] += n_dh * share
        counts[[1, 2]] += n_dh * (1.0 - share)
        updated = counts / total
        if np.max(np.abs(updated - freqs)) < tol:
            freqs = updated
            break
        freqs = updated
    return freqs


def ld_statistics(
    configuration: Sequence[int], ploidy: Ploidy = Ploidy.HAPLOID
) -> Tuple[float, float, float]:
    """Pairwise LD summaries ``(r2, D, D')``.

    ``D = f00 - p q`` with ``p`` and ``q`` the frequencies of allele 0 at the
    two sites. ``D'`` is ``D`` scaled by its maximum attainable magnitude
    given the allele frequencies; statistics with a zero denominator are 0.
    """
    f00, f01, f10, f11 = haplotype_frequencies(configuration, ploidy)
    if f00 + f01 + f10 + f11 == 0:
        return 0.0, 0.0, 0.0
    p = f00 + f01
    q = f00 + f10
    d = f00 - p * q
    denom = p * (1.0 - p) * q * (1.0 - q)
    r2 = d * d / denom if denom > 0 else 0.0
    if d > 0:
        d_max = min(p * (1.0 - q), (1.0 - p) * q)
    else:
        d_max = min(p * q, (1.0 - p) * (1.0 - q))
    d_prime = d / d_max if d_max > 0 else 0.0
    return float(r2), float(d), float(d_prime)


# ============================================================================
# Site type record
# ============================================================================

@dataclass
class SiteType:
    """One canonical pairwise configuration and its aggregates.

    Attributes:
        configuration: Canonical 16-tuple.
        index: Stable insertion index in the owning registry.
        count: Number of SNP pairs of this type.
        missing: Whether any sequence has a missing call at either site.
        min_recombinations: Four-gamete test result (0 or 1).
        ld_stats: ``(r2, D, D')``.
        degenerate: No complete sequence pattern segregating at both sites.
        max_loglik: Cached maximum of the type's likelihood row (``lkptmx``).
        rate_at_max: Grid rate attaining ``max_loglik`` (``rmpt``).
    """
    configuration: Configuration
    index: int
    count: int = 0
    missing: bool = False
    min_recombinations: int = 0
    ld_stats: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    degenerate: bool = False
    max_loglik: float = field(default=math.nan)
    rate_at_max: float = field(default=math.nan)

    @property
    def n_seqs(self) -> int:
        return int(sum(self.configuration))

    def as_array(self) -> NDArray[np.int64]:
        return np.asarray(self.configuration, dtype=np.int64)


# ============================================================================
# Registry
# ============================================================================

class SiteTypeRegistry:
    """Registry of canonical site types with stable insertion order.

    Example:

        reg = SiteTypeRegistry(n_seqs=4)
        st = reg.classify([1, 1, 0, 0, 1, 1, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0])
        st.count                 # 1
        reg.classify(st.configuration).count   # 2, same type

    Args:
        n_seqs: Sample size every configuration must sum to (sequences for
            haploid data, individuals for diploid data).
        ploidy: Haploid or diploid data.

    Attributes:
        type_to_index: Canonical configuration -> insertion index.
        index_to_type: Site types in insertion order.
    """

    def __init__(self, n_seqs: int, ploidy: Ploidy = Ploidy.HAPLOID) -> None:
        if int(n_seqs) < 1:
            raise ValueError(f"n_seqs must be >= 1, got {n_seqs}")
        self.n_seqs = int(n_seqs)
        self.ploidy = Ploidy(ploidy)
        self.type_to_index: Dict[Configuration, int] = {}
        self.index_to_type: List[SiteType] = []
        self._lock = threading.Lock()

    # ---------- validation ----------
    def validate(self, configuration) -> NDArray[np.int64]:
        """Return ``configuration`` as an int64 array or raise ``InvalidConfiguration``."""
        try:
            raw = np.asarray(configuration)
        except (TypeError, ValueError) as e:
            raise InvalidConfiguration(f"cannot read configuration: {e}") from e
        if raw.ndim != 1 and raw.shape != (N_CODES, N_CODES):
            raise InvalidConfiguration(f"configuration must have 16 cells, got shape {raw.shape}")
        raw = raw.ravel()
        if raw.size != CONFIG_SIZE:
            raise InvalidConfiguration(f"configuration must have 16 cells, got {raw.size}")
        if raw.dtype.kind not in "iuf" or raw.dtype.kind == "f" and not np.all(np.mod(raw, 1) == 0):
            raise InvalidConfiguration("configuration counts must be integers")
        arr = raw.astype(np.int64)
        if np.any(arr < 0):
            raise InvalidConfiguration("configuration counts must be non-negative")
        total = int(arr.sum())
        if total != self.n_seqs:
            raise InvalidConfiguration(
                f"configuration sums to {total}, expected {self.n_seqs} sequences"
            )
        if self.ploidy is Ploidy.HAPLOID and has_heterozygotes(arr):
            raise InvalidConfiguration("haploid configuration has heterozygote cells")
        return arr

    # ---------- registration API ----------
    def classify(self, configuration) -> SiteType:
        """Canonicalise ``configuration`` and count one more pair of its type.

        Raises:
            InvalidConfiguration: Malformed configuration; the registry is
                left unchanged.
        """
        arr = self.validate(configuration)
        key = canonicalize(arr)
        missing = has_missing(arr)
        with self._lock:
            idx = self.type_to_index.get(key)
            if idx is None:
                site_type = self._new_type(key)
                self.type_to_index[key] = site_type.index
                self.index_to_type.append(site_type)
            else:
                site_type = self.index_to_type[idx]
            site_type.count += 1
            site_type.missing = site_type.missing or missing
        return site_type

    def _new_type(self, key: Configuration) -> SiteType:
        return SiteType(
            configuration=key,
            index=len(self.index_to_type),
            missing=has_missing(key),
            min_recombinations=four_gamete_test(key, self.ploidy),
            ld_stats=ld_statistics(key, self.ploidy),
            degenerate=is_degenerate(key, self.ploidy),
        )

    def lookup(self, configuration) -> Optional[SiteType]:
        """Site type of ``configuration`` without counting it, or ``None``."""
        arr = self.validate(configuration)
        idx = self.type_to_index.get(canonicalize(arr))
        return None if idx is None else self.index_to_type[idx]

    def merge(self, other: "SiteTypeRegistry") -> NDArray[np.int64]:
        """Add the counts of ``other`` into this registry.

        Types new to this registry are appended in ``other``'s order.

        Returns:
            Array mapping each index of ``other`` to its index here.
        """
        if other.n_seqs != self.n_seqs or other.ploidy is not self.ploidy:
            raise ValueError("cannot merge registries of different sample size or ploidy")
        mapping = np.empty(len(other), dtype=np.int64)
        with self._lock:
            for st in other:
                idx = self.type_to_index.get(st.configuration)
                if idx is None:
                    mine = self._new_type(st.configuration)
                    self.type_to_index[mine.configuration] = mine.index
                    self.index_to_type.append(mine)
                else:
                    mine = self.index_to_type[idx]
                mine.count += st.count
                mine.missing = mine.missing or st.missing
                mapping[st.index] = mine.index
        return mapping

    # ---------- query API ----------
    def __len__(self) -> int:
        return len(self.index_to_type)

    def __iter__(self) -> Iterator[SiteType]:
        return iter(self.index_to_type)

    def __getitem__(self, index: int) -> SiteType:
        return self.index_to_type[index]

    def __contains__(self, configuration) -> bool:
        try:
            arr = self.validate(configuration)
        except InvalidConfiguration:
            return False
        return canonicalize(arr) in self.type_to_index

    @property
    def n_pairs(self) -> int:
        return sum(st.count for st in self.index_to_type)

    def counts(self) -> NDArray[np.int64]:
        """Per-type pair counts in insertion order."""
        return np.fromiter((st.count for st in self.index_to_type), dtype=np.int64,
                           count=len(self))

    def configurations(self) -> NDArray[np.int64]:
        """``(n_types, 16)`` array of canonical configurations."""
        if not self.index_to_type:
            return np.empty((0, CONFIG_SIZE), dtype=np.int64)
        return np.asarray([st.configuration for st in self.index_to_type], dtype=np.int64)

    def filter(self, indices: Iterable[int]) -> "SiteTypeRegistry":
        """New registry holding only the given types (counts copied)."""
        sub = SiteTypeRegistry(self.n_seqs, self.ploidy)
        for i in indices:
            st = self.index_to_type[i]
            mine = sub._new_type(st.configuration)
            mine.count = st.count
            mine.missing = st.missing
            sub.type_to_index[mine.configuration] = mine.index
            sub.index_to_type.append(mine)
        return sub

    def to_frame(self) -> pd.DataFrame:
        """Site-type table for reporting, one row per type in insertion order."""
        records = []
        for st in self.index_to_type:
            rec = {"type": st.index + 1}
            rec.update({f"c{k}": v for k, v in enumerate(st.configuration)})
            rec.update({
                "count": st.count,
                "missing": int(st.missing),
                "rm": st.min_recombinations,
                "r2": st.ld_stats[0],
                "D": st.ld_stats[1],
                "Dprime": st.ld_stats[2],
                "max_loglik": st.max_loglik,
                "rate_at_max": st.rate_at_max,
            })
            records.append(rec)
        columns = (["type"] + [f"c{k}" for k in range(CONFIG_SIZE)]
                   + ["count", "missing", "rm", "r2", "D", "Dprime",
                      "max_loglik", "rate_at_max"])
        return pd.DataFrame.from_records(records, columns=columns)

    def __repr__(self) -> str:
        return (f"SiteTypeRegistry(n_seqs={self.n_seqs}, ploidy={self.ploidy!r}, "
                f"n_types={len(self)}, n_pairs={self.n_pairs})")
