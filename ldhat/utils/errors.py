"""Error conditions of the ldhat core.

All conditions are local and recoverable by the caller. They subclass
``ValueError`` so code that guards inputs generically keeps working.
"""


class LDhatError(Exception):
    """Base class of every ldhat condition."""


class InvalidConfiguration(LDhatError, ValueError):
    """A pairwise configuration is malformed (wrong size, negative or
    non-integral counts, total inconsistent with the sample size, or cells
    that do not exist for the ploidy)."""


class UnsupportedConfiguration(LDhatError, ValueError):
    """A site type has no usable likelihood value at any rate."""


class BlockMapError(LDhatError, ValueError):
    """Illegal structural edit of a recombination block map."""


class InvalidOffset(BlockMapError):
    """Split offset is not strictly inside the block."""


class NotAdjacent(BlockMapError):
    """The two blocks are not mutual left/right neighbours."""


class BoundaryOverflow(BlockMapError):
    """A boundary shift would leave a block with size < 1."""


__all__ = [
    "LDhatError",
    "InvalidConfiguration",
    "UnsupportedConfiguration",
    "BlockMapError",
    "InvalidOffset",
    "NotAdjacent",
    "BoundaryOverflow",
]
