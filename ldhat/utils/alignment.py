"""
Allele Matrix
=============

Integer-coded polymorphism data, one row per sequence (haploid data) or
individual (diploid data) and one column per site, plus the site positions
(``Locs``).

Allele codes:
    haploid: 0..3 (the LDhat convention T/0, C/1, A/2, G/3)
    diploid: 0 and 1 for the two homozygotes, 2 for the heterozygote
    both:    ``MISSING`` (-1) for a missing call

The matrix also provides the per-site table codes consumed by the pair
spectrum builder and the site filters of the ``convert`` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from ldhat.configs.run_config import SEQ_MAX
from ldhat.utils.type_def import CODE_HET, CODE_MISSING, MISSING, Model, Ploidy

logger = logging.getLogger(__name__)

__all__ = [
    "AlleleMatrix",
    "Locs",
    "filter_sites",
    "subsample",
    "convert",
]


# ============================================================================
# Site positions
# ============================================================================

@dataclass(eq=False)
class Locs:
    """Site positions, total sequence length and recombination model.

    Attributes:
        positions: Position of each site, non-decreasing.
        length: Total length of the sequenced region.
        model: Crossing-over or gene conversion.
    """
    positions: NDArray[np.float64]
    length: float
    model: Model = Model.CROSSING_OVER

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float64).ravel()
        self.length = float(self.length)
        self.model = Model.from_code(self.model)
        if np.any(np.diff(self.positions) < 0):
            raise ValueError("site positions are not monotonically increasing")

    @classmethod
    def contiguous(cls, n_sites: int, model: Model = Model.CROSSING_OVER) -> "Locs":
        """Sites at 1, 2, ..., n_sites, as assumed when no locs file is given."""
        return cls(np.arange(1, n_sites + 1, dtype=np.float64), float(n_sites), model)

    @property
    def n_sites(self) -> int:
        return int(self.positions.size)

    def intervals(self) -> NDArray[np.float64]:
        """Lengths of the ``n_sites - 1`` intervals between consecutive sites."""
        return np.diff(self.positions)

    def subset(self, sites: Sequence[int]) -> "Locs":
        return Locs(self.positions[np.asarray(sites, dtype=np.int64)], self.length, self.model)


# ============================================================================
# Allele matrix
# ============================================================================

@dataclass(eq=False)
class AlleleMatrix:
    """Immutable allele matrix.

    Args:
        data: ``(n_seqs, n_sites)`` integer codes, ``MISSING`` for missing.
        ploidy: Haploid or diploid data.
        names: Sequence names; generated when omitted.
    """
    data: NDArray[np.int8]
    ploidy: Ploidy = Ploidy.HAPLOID
    names: List[str] = field(default_factory=list)

    def __post_init__(self):
        data = np.array(self.data, dtype=np.int8, copy=True)
        if data.ndim != 2:
            raise ValueError(f"allele matrix must be 2-D, got shape {data.shape}")
        self.ploidy = Ploidy(self.ploidy)
        top = 3 if self.ploidy is Ploidy.HAPLOID else CODE_HET
        data[(data < 0) | (data > top)] = MISSING
        data.setflags(write=False)
        self.data = data
        if not self.names:
            self.names = [f"seq{i + 1}" for i in range(data.shape[0])]
        elif len(self.names) != data.shape[0]:
            raise ValueError(f"got {len(self.names)} names for {data.shape[0]} sequences")

    @property
    def n_seqs(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_sites(self) -> int:
        return int(self.data.shape[1])

    @property
    def n_chromosomes(self) -> int:
        """Sampled chromosomes: ``n_seqs * ploidy``."""
        return self.n_seqs * int(self.ploidy)

    def allele_count(self) -> NDArray[np.int64]:
        """Per-site counts ``[missing, a0, a1, a2, a3]``.

        Counts are in chromosomes: for diploid data a homozygote counts twice
        for its allele, a heterozygote once for each of alleles 0 and 1, and a
        missing genotype twice in the missing column.
        """
        counts = np.zeros((self.n_sites, 5), dtype=np.int64)
        data = self.data
        if self.ploidy is Ploidy.HAPLOID:
            counts[:, 0] = (data == MISSING).sum(axis=0)
            for a in range(4):
                counts[:, a + 1] = (data == a).sum(axis=0)
            return counts

        het = (data == CODE_HET).sum(axis=0)
        counts[:, 0] = 2 * (data == MISSING).sum(axis=0)
        counts[:, 1] = 2 * (data == 0).sum(axis=0) + het
        counts[:, 2] = 2 * (data == 1).sum(axis=0) + het
        return counts

    def n_alleles(self) -> NDArray[np.int64]:
        """Number of distinct observed alleles per site."""
        return (self.allele_count()[:, 1:] > 0).sum(axis=1)

    def eligible_sites(self) -> NDArray[np.bool_]:
        """Sites usable in pairwise analysis.

        Haploid sites need exactly two observed alleles; diploid sites need
        both alleles observed (a heterozygote carries both).
        """
        return self.n_alleles() == 2

    def segregating_sites(self) -> NDArray[np.bool_]:
        return self.n_alleles() > 1

    def table_codes(self) -> NDArray[np.int64]:
        """Per-site table codes for pairwise configurations.

        Haploid biallelic sites map their lower allele code to 0 and the
        higher to 1; diploid codes are kept. Missing calls, and every call at
        an ineligible site, map to code 3.
        """
        codes = np.full(self.data.shape, CODE_MISSING, dtype=np.int64)
        eligible = self.eligible_sites()
        if self.ploidy is Ploidy.DIPLOID:
            observed = self.data != MISSING
            mask = observed & eligible[None, :]
            codes[mask] = self.data[mask]
            return codes

        counts = self.allele_count()[:, 1:]
        for site in np.flatnonzero(eligible):
            low, high = np.flatnonzero(counts[site])
            column = self.data[:, site]
            codes[column == low, site] = 0
            codes[column == high, site] = 1
        return codes

    def select_sites(self, sites: Sequence[int]) -> "AlleleMatrix":
        sites = np.asarray(sites, dtype=np.int64)
        return AlleleMatrix(self.data[:, sites], self.ploidy, list(self.names))

    def select_sequences(self, rows: Sequence[int]) -> "AlleleMatrix":
        rows = np.asarray(rows, dtype=np.int64)
        return AlleleMatrix(self.data[rows], self.ploidy, [self.names[i] for i in rows])

    def __repr__(self) -> str:
        return (f"AlleleMatrix(n_seqs={self.n_seqs}, n_sites={self.n_sites}, "
                f"ploidy={self.ploidy!r})")


# ============================================================================
# Site filters (``convert``)
# ============================================================================

def filter_sites(
    matrix: AlleleMatrix,
    only2: bool = False,
    freqcut: float = 0.0,
    missfreqcut: float = 1.0,
    site_range: Optional[Tuple[int, int]] = None,
) -> NDArray[np.bool_]:
    """Select the sites kept by ``convert``.

    A site is kept when it is segregating (or, with ``only2`` or a positive
    ``freqcut``, has exactly two alleles whose minor count exceeds
    ``freqcut`` times the number of chromosomes), its missing count is at
    most ``missfreqcut`` times the number of chromosomes, and it lies in
    ``site_range`` (half-open, 0-based).
    """
    if not 0.0 <= freqcut <= 1.0:
        raise ValueError(f"freqcut must be in [0, 1], got {freqcut}")
    if not 0.0 <= missfreqcut <= 1.0:
        raise ValueError(f"missfreqcut must be in [0, 1], got {missfreqcut}")

    counts = matrix.allele_count()
    total = matrix.n_chromosomes
    alleles = counts[:, 1:]
    n_alleles = (alleles > 0).sum(axis=1)
    minor = np.where(alleles > 0, alleles, np.iinfo(np.int64).max).min(axis=1)

    if only2 or freqcut > 0:
        keep = (n_alleles == 2) & (minor != total) & (minor > total * freqcut)
    else:
        keep = n_alleles > 1
    keep &= counts[:, 0] <= total * missfreqcut

    if site_range is not None:
        lower, upper = site_range
        if not 0 <= lower <= upper:
            raise ValueError(f"invalid site range {site_range}")
        in_range = np.zeros(matrix.n_sites, dtype=bool)
        in_range[lower:min(upper, matrix.n_sites)] = True
        keep &= in_range
    return keep


def subsample(
    matrix: AlleleMatrix, nout: Optional[int], rng: np.random.Generator
) -> NDArray[np.int64]:
    """Sorted indices of ``nout`` sequences drawn without replacement."""
    n = matrix.n_seqs
    nout = n if nout is None else min(int(nout), n)
    if nout < 1:
        raise ValueError(f"nout must be >= 1, got {nout}")
    return np.sort(rng.choice(n, size=nout, replace=False))


def convert(
    matrix: AlleleMatrix,
    locs: Optional[Locs] = None,
    only2: bool = False,
    freqcut: float = 0.0,
    missfreqcut: float = 1.0,
    site_range: Optional[Tuple[int, int]] = None,
    nout: Optional[int] = None,
    seed: Optional[int] = None,
) -> Tuple[AlleleMatrix, Locs]:
    """Filter sites and subsample sequences.

    Sequences beyond ``SEQ_MAX`` are dropped with a warning.

    Raises:
        ValueError: No site passes the filters.
    """
    if locs is None:
        locs = Locs.contiguous(matrix.n_sites)
    if locs.n_sites != matrix.n_sites:
        raise ValueError(f"locs has {locs.n_sites} sites, matrix has {matrix.n_sites}")
    if matrix.n_seqs > SEQ_MAX:
        logger.warning("More than max no. sequences: using first %d for analysis", SEQ_MAX)
        matrix = matrix.select_sequences(np.arange(SEQ_MAX))

    logger.info("Reading %d sequences of length %d", matrix.n_seqs, matrix.n_sites)
    keep = filter_sites(matrix, only2, freqcut, missfreqcut, site_range)
    if not keep.any():
        raise ValueError("No data to output")

    rng = np.random.default_rng(seed)
    rows = subsample(matrix, nout, rng)
    sites = np.flatnonzero(keep)
    logger.info("Kept %d of %d sites and %d sequences", sites.size, matrix.n_sites, rows.size)
    out = matrix.select_sequences(rows).select_sites(sites)
    return out, locs.subset(sites)
