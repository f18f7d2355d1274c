import numpy as np
import pytest

from ldhat.utils.block_map import NIL, BlockMap
from ldhat.utils.errors import (
    BlockMapError,
    BoundaryOverflow,
    InvalidOffset,
    NotAdjacent,
)


def test_split_then_merge_restores_single_block():
    bm = BlockMap(100, rate=1.0)
    right = bm.split(bm.head, 40)
    assert bm.to_list() == [(0, 40, 1.0), (40, 60, 1.0)]
    bm.check_invariants()
    assert bm.merge(bm.head, right) == bm.head
    assert bm.to_list() == [(0, 100, 1.0)]
    bm.check_invariants()


def test_merge_default_rate_is_size_weighted():
    bm = BlockMap.from_blocks([(0, 30, 1.0), (30, 10, 5.0)])
    bm.merge(bm.head, bm.right(bm.head))
    assert bm.to_list() == [(0, 40, 2.0)]


def test_split_rates():
    bm = BlockMap(10, rate=2.0)
    right = bm.split(bm.head, 3, rate=0.5)
    assert bm.rate(bm.head) == 2.0
    assert bm.rate(right) == 0.5
    assert bm.left(right) == bm.head
    assert bm.right(right) == NIL
    assert bm.end(right) == 10


def test_shift_boundary_round_trip():
    bm = BlockMap.from_blocks([(0, 4, 1.0), (4, 4, 2.0), (8, 2, 3.0)])
    original = bm.to_list()
    a = bm.head
    b = bm.right(a)
    bm.shift_boundary(a, b, 2)
    assert bm.to_list() == [(0, 6, 1.0), (6, 2, 2.0), (8, 2, 3.0)]
    bm.shift_boundary(a, b, -3)
    assert bm.sizes().tolist() == [3, 5, 2]
    bm.shift_boundary(a, b, 1)
    assert bm.to_list() == original
    bm.check_invariants()


def test_random_edit_sequence_keeps_invariants():
    rng = np.random.default_rng(42)
    bm = BlockMap(50, rate=1.0)
    original = [(p, s) for p, s, _ in bm.to_list()]
    for _ in range(500):
        op = rng.integers(4)
        b = bm.random_block(rng)
        if op == 0 and bm.size(b) > 1:
            bm.split(b, int(rng.integers(1, bm.size(b))), rate=float(rng.uniform(0.1, 3.0)))
        elif op == 1 and bm.right(b) != NIL:
            bm.merge(b, bm.right(b))
        elif op == 2 and bm.right(b) != NIL:
            try:
                bm.shift_boundary(b, bm.right(b), int(rng.integers(-3, 4)))
            except BoundaryOverflow:
                pass
        else:
            bm.set_rate(b, float(rng.uniform(0.1, 3.0)))
        bm.check_invariants()
        assert bm.sizes().sum() == 50
        assert bm.interval_rates().size == 50

    while bm.n_blocks > 1:
        bm.merge(bm.head, bm.right(bm.head))
    assert [(p, s) for p, s, _ in bm.to_list()] == original


def test_failed_edits_leave_map_unchanged():
    bm = BlockMap.from_blocks([(0, 3, 1.0), (3, 1, 2.0), (4, 6, 3.0)])
    a = bm.head
    b = bm.right(a)
    c = bm.right(b)
    before = bm.to_list()

    with pytest.raises(InvalidOffset):
        bm.split(a, 0)
    with pytest.raises(InvalidOffset):
        bm.split(a, 3)
    with pytest.raises(NotAdjacent):
        bm.merge(a, c)
    with pytest.raises(NotAdjacent):
        bm.merge(b, a)
    with pytest.raises(NotAdjacent):
        bm.shift_boundary(a, c, 1)
    with pytest.raises(BoundaryOverflow):
        bm.shift_boundary(a, b, 1)
    with pytest.raises(BoundaryOverflow):
        bm.shift_boundary(a, b, -3)
    with pytest.raises(ValueError):
        bm.set_rate(a, -1.0)
    with pytest.raises(ValueError):
        bm.split(c, 2, rate=float("nan"))

    assert bm.to_list() == before
    bm.check_invariants()


def test_errors_are_block_map_errors():
    assert issubclass(InvalidOffset, BlockMapError)
    assert issubclass(NotAdjacent, BlockMapError)
    assert issubclass(BoundaryOverflow, BlockMapError)
    bm = BlockMap(5)
    right = bm.split(bm.head, 2)
    bm.merge(bm.head, right)
    with pytest.raises(BlockMapError):
        bm.rate(right)
    with pytest.raises(BlockMapError):
        bm.size(17)


def test_freed_ids_are_reused():
    bm = BlockMap(10)
    right = bm.split(bm.head, 5)
    bm.merge(bm.head, right)
    assert bm.split(bm.head, 5) == right
    assert sorted(bm.active()) == [bm.head, right]


def test_queries():
    bm = BlockMap.per_interval([0.5, 1.0, 1.5, 2.0])
    assert bm.n_blocks == len(bm) == 4
    np.testing.assert_allclose(bm.rates(), [0.5, 1.0, 1.5, 2.0])
    np.testing.assert_allclose(bm.interval_rates(), [0.5, 1.0, 1.5, 2.0])
    assert bm.boundaries().tolist() == [1, 2, 3]
    assert bm.position(bm.find(2)) == 2
    with pytest.raises(IndexError):
        bm.find(4)

    rng = np.random.default_rng(0)
    assert {bm.random_block(rng) for _ in range(200)} == set(bm.active())


def test_from_blocks_requires_partition():
    with pytest.raises(BlockMapError):
        BlockMap.from_blocks([])
    with pytest.raises(BlockMapError):
        BlockMap.from_blocks([(0, 3, 1.0), (4, 2, 1.0)])
    with pytest.raises(ValueError):
        BlockMap(0)


def test_copy_is_independent():
    bm = BlockMap(8, rate=1.0)
    other = bm.copy()
    other.split(other.head, 4, rate=2.0)
    assert bm.to_list() == [(0, 8, 1.0)]
    assert other.to_list() == [(0, 4, 1.0), (4, 4, 2.0)]
    other.check_invariants()
