"""
File I/O
========

Readers and writers for the LDhat text formats:

- sites file: header ``nseq lseq ploidy`` followed by FASTA records;
- locs file: header ``nsites length model`` followed by the positions;
- likelihood table: header ``n_seqs n_types [ploidy]``, ``1 theta``,
  ``rcat rmax``, then one line per site type
  ``index # c0 .. c15 : v0 .. v(rcat - 1)``.

Likelihood values are written with ``repr`` so a table survives a round
trip exactly, ``-inf`` included. Report tables are tab-separated text
written through pandas.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import pandas as pd

from ldhat.utils.alignment import AlleleMatrix, Locs
from ldhat.utils.likelihood_surface import LikelihoodSurface
from ldhat.utils.site_types import SiteTypeRegistry
from ldhat.utils.type_def import COMPLETE_CELLS_HAPLOID, CONFIG_SIZE, MISSING, Model, Ploidy

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

__all__ = [
    "read_sites",
    "write_sites",
    "read_locs",
    "write_locs",
    "read_lk_table",
    "write_lk_table",
    "write_table",
    "write_json",
]

LINE_WIDTH = 50

_CHAR_CODES: Dict[str, int] = {
    "0": 0, "T": 0, "t": 0,
    "1": 1, "C": 1, "c": 1,
    "2": 2, "A": 2, "a": 2,
    "3": 3, "G": 3, "g": 3,
}


# ============================================================================
# Sites
# ============================================================================

def _parse_header(line: str, n_fields: int, what: str) -> List[str]:
    fields = line.split()
    if len(fields) < n_fields:
        raise ValueError(f"{what} header needs {n_fields} fields, got {line.strip()!r}")
    return fields


def read_sites(path: PathLike) -> AlleleMatrix:
    """Read a sites file.

    Characters ``0/T``, ``1/C``, ``2/A`` and ``3/G`` (any case) are allele
    codes 0..3; anything else is missing.

    Raises:
        ValueError: Malformed header, or record count / lengths that do not
            match the header.
    """
    path = Path(path)
    with path.open() as f:
        lines = f.read().splitlines()
    if not lines:
        raise ValueError(f"{path}: empty sites file")
    nseq, lseq, ploidy = _parse_header(lines[0], 3, "sites")
    nseq, lseq = int(nseq), int(lseq)
    try:
        ploidy = Ploidy(int(ploidy))
    except ValueError as e:
        raise ValueError(f"{path}: ploidy must be 1 or 2, got {ploidy}") from e

    names: List[str] = []
    chunks: List[List[str]] = []
    for line in lines[1:]:
        line = line.strip()
        if not line:
            continue
        if line.startswith(">"):
            names.append(line[1:].split()[0] if line[1:].split() else f"seq{len(names) + 1}")
            chunks.append([])
        elif chunks:
            chunks[-1].append("".join(line.split()))
        else:
            raise ValueError(f"{path}: sequence data before the first '>' record")

    if len(names) != nseq:
        raise ValueError(f"{path}: header declares {nseq} sequences, found {len(names)}")
    data = np.full((nseq, lseq), MISSING, dtype=np.int8)
    for i, chunk in enumerate(chunks):
        seq = "".join(chunk)
        if len(seq) != lseq:
            raise ValueError(f"{path}: sequence {names[i]!r} has length {len(seq)}, "
                             f"expected {lseq}")
        data[i] = [_CHAR_CODES.get(ch, MISSING) for ch in seq]

    logger.info("Read %d sequences of %d sites from %s", nseq, lseq, path)
    return AlleleMatrix(data, ploidy, names)


def write_sites(path: PathLike, matrix: AlleleMatrix) -> None:
    """Write a sites file, allele codes as digits and ``?`` for missing."""
    path = Path(path)
    symbols = np.array(["?", "0", "1", "2", "3"])
    with path.open("w") as f:
        f.write(f"{matrix.n_seqs} {matrix.n_sites} {int(matrix.ploidy)}\n")
        for name, row in zip(matrix.names, matrix.data):
            seq = "".join(symbols[row.astype(np.int64) + 1])
            f.write(f">{name}\n")
            for start in range(0, len(seq), LINE_WIDTH):
                f.write(seq[start:start + LINE_WIDTH] + "\n")
    logger.info("Segregating sites written to %s", path)


# ============================================================================
# Locs
# ============================================================================

def read_locs(path: PathLike) -> Locs:
    """Read a locs file.

    Raises:
        ValueError: Malformed header, wrong number of positions, or
            positions not monotonically increasing.
    """
    path = Path(path)
    with path.open() as f:
        tokens = f.read().split()
    n_sites, length, model = _parse_header(" ".join(tokens[:3]), 3, "locs")
    positions = np.asarray([float(t) for t in tokens[3:]], dtype=np.float64)
    if positions.size != int(n_sites):
        raise ValueError(f"{path}: header declares {n_sites} sites, found {positions.size}")
    locs = Locs(positions, float(length), Model.from_code(model))
    logger.info("Read %d site positions from %s", locs.n_sites, path)
    return locs


def write_locs(path: PathLike, locs: Locs) -> None:
    path = Path(path)
    with path.open("w") as f:
        f.write(f"{locs.n_sites} {locs.length:g} {locs.model.value}\n")
        for p in locs.positions:
            f.write(f"{p:.3f}\n")
    logger.info("Locations of segregating sites written to %s", path)


# ============================================================================
# Likelihood tables
# ============================================================================

def read_lk_table(path: PathLike) -> LikelihoodSurface:
    """Read a likelihood table.

    Type lines may carry the full 16 cells or, for haploid tables, just the
    four complete cells ``n00 n01 n10 n11``.
    """
    path = Path(path)
    with path.open() as f:
        lines = [line for line in f.read().splitlines() if line.strip()]
    if len(lines) < 3:
        raise ValueError(f"{path}: truncated likelihood table header")
    head = _parse_header(lines[0], 2, "likelihood table")
    n_seqs, n_types = int(head[0]), int(head[1])
    ploidy = Ploidy(int(head[2])) if len(head) > 2 else Ploidy.HAPLOID
    theta = float(_parse_header(lines[1], 2, "theta")[1])
    rcat_s, rmax_s = _parse_header(lines[2], 2, "rate grid")[:2]
    rcat, rmax = int(rcat_s), float(rmax_s)

    body = lines[3:]
    if len(body) != n_types:
        raise ValueError(f"{path}: header declares {n_types} types, found {len(body)}")
    configs = np.zeros((n_types, CONFIG_SIZE), dtype=np.int64)
    values = np.empty((n_types, rcat), dtype=np.float64)
    for r, line in enumerate(body):
        try:
            left, right = line.split(":")
            _, counts = left.split("#")
        except ValueError as e:
            raise ValueError(f"{path}: malformed type line {r + 1}: {line!r}") from e
        cells = [int(c) for c in counts.split()]
        if len(cells) == CONFIG_SIZE:
            configs[r] = cells
        elif len(cells) == len(COMPLETE_CELLS_HAPLOID):
            configs[r, list(COMPLETE_CELLS_HAPLOID)] = cells
        else:
            raise ValueError(f"{path}: type line {r + 1} has {len(cells)} cells")
        row = [float(v) for v in right.split()]
        if len(row) != rcat:
            raise ValueError(f"{path}: type line {r + 1} has {len(row)} values, expected {rcat}")
        values[r] = row

    logger.info("Read likelihood table of %d types x %d rates from %s", n_types, rcat, path)
    return LikelihoodSurface(configs, values, rmax, n_seqs, ploidy, theta)


def write_lk_table(path: PathLike, surface: LikelihoodSurface) -> None:
    path = Path(path)
    with path.open("w") as f:
        f.write(f"{surface.n_seqs} {len(surface)} {int(surface.ploidy)}\n")
        f.write(f"1 {surface.theta!r}\n")
        f.write(f"{surface.rcat} {surface.rmax!r}\n")
        for r, (config, row) in enumerate(zip(surface.configurations, surface.values)):
            cells = " ".join(str(int(c)) for c in config)
            vals = " ".join(repr(float(v)) for v in row)
            f.write(f"{r + 1} # {cells} : {vals}\n")
    logger.info("Likelihood table written to %s", path)


# ============================================================================
# Reports
# ============================================================================

def write_table(path: PathLike, frame: Union[pd.DataFrame, SiteTypeRegistry]) -> None:
    """Write a report table (or a registry's site-type table) as TSV."""
    if isinstance(frame, SiteTypeRegistry):
        frame = frame.to_frame()
    frame.to_csv(Path(path), sep="\t", index=False, float_format="%.6g")


def write_json(path: PathLike, data: Dict[str, Any]) -> None:
    """Write a run summary as a single JSON line."""
    def _default(obj):
        if isinstance(obj, np.generic):
            return obj.item()
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        raise TypeError(f"not JSON serializable: {type(obj).__name__}")

    with Path(path).open("w") as f:
        f.write(json.dumps(data, default=_default) + "\n")
