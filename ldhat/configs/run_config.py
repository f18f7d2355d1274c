"""
Run Configuration
=================

Run-scoped constants of one analysis. Components receive a ``RunConfig``
(or the individual values taken from it) explicitly instead of reading
module globals, so tests can run with small values.

The module-level defaults follow the constants of the LDhat 2 C
headers.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional


# ============================================================================
# Defaults
# ============================================================================

# Max distance (in SNP columns) between the two sites of a pair
MAXW = 50

# Number of proposals in importance-sampling estimation of pair likelihoods
NRUN = 1_000_000

# Number of permutations in tests for recombination
NSHUFF = 1000

# Burn-in iterations of the block search
BURNIN = 100_000

# Max number of sequences
SEQ_MAX = 1000

# Rate grid of the likelihood surface
RCAT = 101
RMAX = 100.0

# Theta per site used when a surface has to be simulated
THETA = 0.001


@dataclass
class RunConfig:
    """Parameters of one analysis run.

    Attributes:
        window: Max column distance between the two sites of a pair.
        ploidy: Haploid (1) or diploid (2) data.
        model: Crossing-over (``L``) or gene conversion (``C``).
        tract_length: Mean conversion tract length (``C`` model only), in the
            same units as site positions.
        theta: Theta per site for surface simulation.
        rcat: Number of rate categories in the surface grid.
        rmax: Largest pairwise rho of the grid.
        n_draws: Genealogies per grid point in surface simulation.
        n_shuffle: Permutations in the LD/distance test.
        n_update: Iterations of the block search.
        r_update: Iterations between samples of the block search.
        burnin: Iterations discarded before sampling.
        bpen: Block penalty (log prior cost per block).
        seed: Seed for the numpy ``Generator``; ``None`` draws from entropy.
    """
    window: int = MAXW
    ploidy: int = 1
    model: str = "L"
    tract_length: float = 0.0
    theta: float = THETA
    rcat: int = RCAT
    rmax: float = RMAX
    n_draws: int = NRUN
    n_shuffle: int = NSHUFF
    n_update: int = 1_000_000
    r_update: int = 3000
    burnin: int = BURNIN
    bpen: float = 5.0
    seed: Optional[int] = None

    def __post_init__(self):
        self.ploidy = int(self.ploidy)
        self.model = str(getattr(self.model, "value", self.model)).upper()
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` for out-of-range parameters."""
        if self.window < 1:
            raise ValueError(f"window must be >= 1, got {self.window}")
        if self.ploidy not in (1, 2):
            raise ValueError(f"ploidy must be 1 or 2, got {self.ploidy}")
        if self.model not in ("L", "C"):
            raise ValueError(f"model must be L or C, got {self.model!r}")
        if self.model == "C" and self.tract_length <= 0:
            raise ValueError("gene conversion model requires a positive tract_length")
        if self.theta <= 0:
            raise ValueError(f"theta must be positive, got {self.theta}")
        if self.rcat < 2:
            raise ValueError(f"rcat must be >= 2, got {self.rcat}")
        if self.rmax <= 0:
            raise ValueError(f"rmax must be positive, got {self.rmax}")
        if self.n_draws < 1:
            raise ValueError(f"n_draws must be >= 1, got {self.n_draws}")
        if self.n_update < 1 or self.r_update < 1:
            raise ValueError("n_update and r_update must be >= 1")
        if self.burnin < 0:
            raise ValueError(f"burnin must be non-negative, got {self.burnin}")
        if self.bpen < 0:
            raise ValueError(f"bpen must be non-negative, got {self.bpen}")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "RunConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
