"""
Recombination Block Map
=======================

Ordered partition of the ``n_intervals`` SNP-to-SNP intervals into blocks
of constant recombination rate.

Blocks live in an arena of parallel lists indexed by block id. Neighbour
links are ids (``NIL`` at either end), freed ids are recycled through a
free list, and the ids of live blocks are kept in an active list so a block
can be drawn uniformly at random in O(1). Every structural edit validates
its arguments before touching any list, so a failed edit leaves the map
unchanged.

Invariants (checked by ``check_invariants``):
    - blocks cover ``[0, n_intervals)`` without gaps or overlaps;
    - every block has ``size >= 1`` and the sizes sum to ``n_intervals``;
    - walking right from the head visits blocks in increasing position;
    - ``left[right[b]] == b`` for every block with a right neighbour.
"""

from __future__ import annotations

import logging
import math
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from ldhat.utils.errors import BlockMapError, BoundaryOverflow, InvalidOffset, NotAdjacent

logger = logging.getLogger(__name__)

__all__ = ["BlockMap", "NIL"]

NIL = -1

Block = Tuple[int, int, float]   # (position, size, rate)


def _check_rate(rate: float) -> float:
    rate = float(rate)
    if not math.isfinite(rate) or rate < 0:
        raise ValueError(f"block rate must be finite and non-negative, got {rate}")
    return rate


class BlockMap:
    """Index-based doubly linked block map.

    Example:

        bm = BlockMap(100, rate=1.0)
        right = bm.split(bm.head, 40)      # [0, 40) and [40, 100)
        bm.merge(bm.head, right)           # back to [0, 100), rate 1.0

    Args:
        n_intervals: Number of intervals covered (number of sites - 1).
        rate: Rate of the initial single block.
    """

    def __init__(self, n_intervals: int, rate: float = 1.0) -> None:
        if int(n_intervals) < 1:
            raise ValueError(f"n_intervals must be >= 1, got {n_intervals}")
        self.n_intervals = int(n_intervals)
        self._pos: List[int] = []
        self._size: List[int] = []
        self._rate: List[float] = []
        self._left: List[int] = []
        self._right: List[int] = []
        self._slot: List[int] = []
        self._free: List[int] = []
        self._active: List[int] = []
        self.head = self._alloc(0, self.n_intervals, _check_rate(rate), NIL, NIL)

    # ---------- construction ----------
    @classmethod
    def from_blocks(cls, blocks: Sequence[Block]) -> "BlockMap":
        """Build a map from ordered ``(position, size, rate)`` triples."""
        if not blocks:
            raise BlockMapError("a block map needs at least one block")
        expected = 0
        for pos, size, _ in blocks:
            if int(pos) != expected or int(size) < 1:
                raise BlockMapError(f"blocks do not partition the intervals at position {pos}")
            expected += int(size)
        bm = cls(expected, rate=blocks[0][2])
        current = bm.head
        for pos, size, rate in blocks[1:]:
            current = bm.split(current, int(pos) - bm.position(current), rate)
        return bm

    @classmethod
    def per_interval(cls, rates: Sequence[float]) -> "BlockMap":
        """One block per interval."""
        return cls.from_blocks([(i, 1, r) for i, r in enumerate(rates)])

    def copy(self) -> "BlockMap":
        other = object.__new__(BlockMap)
        other.n_intervals = self.n_intervals
        other._pos = list(self._pos)
        other._size = list(self._size)
        other._rate = list(self._rate)
        other._left = list(self._left)
        other._right = list(self._right)
        other._slot = list(self._slot)
        other._free = list(self._free)
        other._active = list(self._active)
        other.head = self.head
        return other

    # ---------- arena ----------
    def _alloc(self, pos: int, size: int, rate: float, left: int, right: int) -> int:
        if self._free:
            b = self._free.pop()
            self._pos[b], self._size[b], self._rate[b] = pos, size, rate
            self._left[b], self._right[b] = left, right
            self._slot[b] = len(self._active)
        else:
            b = len(self._pos)
            self._pos.append(pos)
            self._size.append(size)
            self._rate.append(rate)
            self._left.append(left)
            self._right.append(right)
            self._slot.append(len(self._active))
        self._active.append(b)
        return b

    def _release(self, b: int) -> None:
        slot = self._slot[b]
        last = self._active[-1]
        self._active[slot] = last
        self._slot[last] = slot
        self._active.pop()
        self._slot[b] = NIL
        self._left[b] = self._right[b] = NIL
        self._free.append(b)

    def _require(self, b: int) -> int:
        if not isinstance(b, (int, np.integer)) or not 0 <= b < len(self._slot) \
                or self._slot[b] == NIL:
            raise BlockMapError(f"block {b} is not in the map")
        return int(b)

    # ---------- query API ----------
    @property
    def n_blocks(self) -> int:
        return len(self._active)

    def __len__(self) -> int:
        return len(self._active)

    def position(self, b: int) -> int:
        return self._pos[self._require(b)]

    def size(self, b: int) -> int:
        return self._size[self._require(b)]

    def rate(self, b: int) -> float:
        return self._rate[self._require(b)]

    def end(self, b: int) -> int:
        b = self._require(b)
        return self._pos[b] + self._size[b]

    def left(self, b: int) -> int:
        return self._left[self._require(b)]

    def right(self, b: int) -> int:
        return self._right[self._require(b)]

    def active(self) -> List[int]:
        """Ids of live blocks in arena order (not sequence order)."""
        return list(self._active)

    def random_block(self, rng: np.random.Generator) -> int:
        return self._active[int(rng.integers(len(self._active)))]

    def __iter__(self) -> Iterator[int]:
        b = self.head
        while b != NIL:
            yield b
            b = self._right[b]

    def find(self, interval: int) -> int:
        """Block covering ``interval``."""
        if not 0 <= interval < self.n_intervals:
            raise IndexError(f"interval {interval} outside [0, {self.n_intervals})")
        for b in self:
            if self._pos[b] + self._size[b] > interval:
                return b
        raise BlockMapError("block map does not cover all intervals")

    def rates(self) -> NDArray[np.float64]:
        """Per-block rates in sequence order."""
        return np.fromiter((self._rate[b] for b in self), dtype=np.float64,
                           count=self.n_blocks)

    def sizes(self) -> NDArray[np.int64]:
        return np.fromiter((self._size[b] for b in self), dtype=np.int64,
                           count=self.n_blocks)

    def interval_rates(self) -> NDArray[np.float64]:
        """Rate of every interval, length ``n_intervals``."""
        return np.repeat(self.rates(), self.sizes())

    def boundaries(self) -> NDArray[np.int64]:
        """Start positions of all blocks except the first."""
        return np.fromiter((self._pos[b] for b in self if b != self.head), dtype=np.int64,
                           count=self.n_blocks - 1)

    def to_list(self) -> List[Block]:
        return [(self._pos[b], self._size[b], self._rate[b]) for b in self]

    # ---------- structural edits ----------
    def split(self, b: int, offset: int, rate: Optional[float] = None) -> int:
        """Split block ``b`` at ``offset``; the new right block gets ``rate``.

        The right block inherits ``b``'s rate when ``rate`` is ``None``.

        Returns:
            Id of the new right block.

        Raises:
            InvalidOffset: ``offset`` is not strictly inside the block.
        """
        b = self._require(b)
        offset = int(offset)
        size = self._size[b]
        if not 0 < offset < size:
            raise InvalidOffset(f"offset {offset} not inside block of size {size}")
        new_rate = self._rate[b] if rate is None else _check_rate(rate)

        right = self._right[b]
        new = self._alloc(self._pos[b] + offset, size - offset, new_rate, b, right)
        if right != NIL:
            self._left[right] = new
        self._right[b] = new
        self._size[b] = offset
        return new

    def merge(self, a: int, b: int, rate: Optional[float] = None) -> int:
        """Merge ``b`` into its left neighbour ``a``.

        The merged block gets ``rate``, or the size-weighted mean of the two
        rates when ``rate`` is ``None``.

        Returns:
            Id of the merged block (``a``).

        Raises:
            NotAdjacent: ``b`` is not the right neighbour of ``a``.
        """
        a = self._require(a)
        b = self._require(b)
        if self._right[a] != b or self._left[b] != a:
            raise NotAdjacent(f"blocks {a} and {b} are not adjacent")
        size_a, size_b = self._size[a], self._size[b]
        if rate is None:
            new_rate = (size_a * self._rate[a] + size_b * self._rate[b]) / (size_a + size_b)
        else:
            new_rate = _check_rate(rate)

        right = self._right[b]
        self._size[a] = size_a + size_b
        self._rate[a] = new_rate
        self._right[a] = right
        if right != NIL:
            self._left[right] = a
        self._release(b)
        return a

    def shift_boundary(self, a: int, b: int, delta: int) -> None:
        """Move the boundary between adjacent ``a`` and ``b`` right by ``delta``.

        Raises:
            NotAdjacent: ``b`` is not the right neighbour of ``a``.
            BoundaryOverflow: A resulting size would be < 1.
        """
        a = self._require(a)
        b = self._require(b)
        if self._right[a] != b or self._left[b] != a:
            raise NotAdjacent(f"blocks {a} and {b} are not adjacent")
        delta = int(delta)
        new_a = self._size[a] + delta
        new_b = self._size[b] - delta
        if new_a < 1 or new_b < 1:
            raise BoundaryOverflow(
                f"shift by {delta} leaves sizes {new_a} and {new_b}"
            )
        self._size[a] = new_a
        self._size[b] = new_b
        self._pos[b] += delta

    def set_rate(self, b: int, rate: float) -> None:
        b = self._require(b)
        self._rate[b] = _check_rate(rate)

    # ---------- validation ----------
    def check_invariants(self) -> None:
        """Raise ``BlockMapError`` if the map is not a valid partition."""
        if self._left[self.head] != NIL or self._slot[self.head] == NIL:
            raise BlockMapError("head block is not a live leftmost block")
        expected = 0
        seen = 0
        prev = NIL
        b = self.head
        while b != NIL:
            if self._slot[b] == NIL or self._active[self._slot[b]] != b:
                raise BlockMapError(f"block {b} is linked but not active")
            if self._left[b] != prev:
                raise BlockMapError(f"inconsistent links around block {b}")
            if self._pos[b] != expected:
                raise BlockMapError(f"block {b} starts at {self._pos[b]}, expected {expected}")
            if self._size[b] < 1:
                raise BlockMapError(f"block {b} has size {self._size[b]}")
            expected += self._size[b]
            seen += 1
            if seen > len(self._active):
                raise BlockMapError("cycle in block links")
            prev, b = b, self._right[b]
        if expected != self.n_intervals:
            raise BlockMapError(f"blocks cover {expected} of {self.n_intervals} intervals")
        if seen != len(self._active):
            raise BlockMapError(f"{len(self._active) - seen} active blocks are unreachable")

    def __repr__(self) -> str:
        return f"BlockMap(n_intervals={self.n_intervals}, n_blocks={self.n_blocks})"
