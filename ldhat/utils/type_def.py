"""Type definitions shared across the ldhat core.

Small enums and aliases for ploidy, recombination model, allele and table
codes. Values are plain ints/strings so they index arrays directly and pass
unchanged into Numba kernels.
"""

from enum import Enum, IntEnum
from typing import Tuple, TypeAlias



class Ploidy(IntEnum):
    """Haploid (1) or diploid (2) data, as in the sites file header."""
    HAPLOID = 1
    DIPLOID = 2

    def __repr__(self):
        return f"Ploidy.{self.name}"


class Model(Enum):
    """Crossing-over (``L``) or gene conversion (``C``) model."""
    CROSSING_OVER = "L"
    GENE_CONVERSION = "C"

    @classmethod
    def from_code(cls, code) -> "Model":
        """Accept a ``Model`` or its one-letter code."""
        if isinstance(code, cls):
            return code
        try:
            return cls(str(code).strip().upper())
        except ValueError as e:
            raise ValueError(f"unknown model {code!r}, expected 'L' or 'C'") from e

    def __str__(self):
        return self.value


# Allele matrix sentinel for a missing call
MISSING: int = -1

# Table codes: 0/1 alleles (diploid: homozygotes), 2 heterozygote, 3 missing
CODE_HET: int = 2
CODE_MISSING: int = 3
N_CODES: int = 4
CONFIG_SIZE: int = N_CODES * N_CODES

# Flat indices of the haploid cells that never involve a missing call
COMPLETE_CELLS_HAPLOID: Tuple[int, ...] = (0, 1, 4, 5)

Configuration: TypeAlias = Tuple[int, ...]  # canonical 16-tuple


def cell(code_a: int, code_b: int) -> int:
    """Flat index of table cell ``(code_a, code_b)``."""
    return code_a * N_CODES + code_b


__all__ = [
    "Ploidy",
    "Model",
    "MISSING",
    "CODE_HET",
    "CODE_MISSING",
    "N_CODES",
    "CONFIG_SIZE",
    "COMPLETE_CELLS_HAPLOID",
    "Configuration",
    "cell",
]
