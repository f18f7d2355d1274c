import numpy as np
import pytest

from ldhat.utils.alignment import AlleleMatrix, Locs, convert, filter_sites, subsample
from ldhat.utils.type_def import CODE_MISSING, MISSING, Model, Ploidy


def test_matrix_is_read_only_and_codes_invalid_values():
    matrix = AlleleMatrix(np.array([[0, 5, 1], [2, 3, -7]]))
    assert matrix.data[0, 1] == MISSING
    assert matrix.data[1, 2] == MISSING
    assert matrix.data[1, 1] == 3
    with pytest.raises(ValueError):
        matrix.data[0, 0] = 1
    assert matrix.names == ["seq1", "seq2"]

    diploid = AlleleMatrix(np.array([[0, 3], [2, 1]]), Ploidy.DIPLOID)
    assert diploid.data[0, 1] == MISSING


def test_names_must_match_rows():
    with pytest.raises(ValueError):
        AlleleMatrix(np.zeros((2, 3)), names=["only"])


def test_allele_count_diploid():
    matrix = AlleleMatrix(np.array([[0], [2], [1], [-1]]), Ploidy.DIPLOID)
    np.testing.assert_array_equal(matrix.allele_count()[0], [2, 3, 3, 0, 0])
    assert matrix.n_chromosomes == 8
    assert matrix.eligible_sites().tolist() == [True]


def test_table_codes_haploid():
    data = np.array([
        [2, 1, 0],
        [3, 1, 1],
        [-1, 1, 2],
        [3, 1, 1],
    ])
    codes = AlleleMatrix(data).table_codes()
    # biallelic {A, G} maps to 0/1; monomorphic and triallelic sites are unusable
    assert codes[:, 0].tolist() == [0, 1, CODE_MISSING, 1]
    assert np.all(codes[:, 1] == CODE_MISSING)
    assert np.all(codes[:, 2] == CODE_MISSING)


def test_table_codes_diploid_keep_genotypes(diploid_matrix):
    codes = diploid_matrix.table_codes()
    assert codes[:, 0].tolist() == [0, 2, 1, 0, 2]
    assert codes[3, 2] == CODE_MISSING


def test_locs():
    locs = Locs([1.0, 2.5, 2.5, 7.0], 10.0, "c")
    assert locs.model is Model.GENE_CONVERSION
    np.testing.assert_allclose(locs.intervals(), [1.5, 0.0, 4.5])
    assert locs.subset([0, 3]).positions.tolist() == [1.0, 7.0]
    with pytest.raises(ValueError, match="monotonically"):
        Locs([3.0, 2.0], 5.0)
    with pytest.raises(ValueError):
        Locs([1.0], 5.0, "X")


def test_filter_sites():
    data = np.array([
        [0, 0, 0, 0, 1],
        [1, 0, 1, 0, 1],
        [0, 0, 2, -1, 0],
        [0, 0, 1, -1, 0],
        [0, 0, 1, 1, 0],
    ])
    matrix = AlleleMatrix(data)
    assert filter_sites(matrix).tolist() == [True, False, True, True, True]
    assert filter_sites(matrix, only2=True).tolist() == [True, False, False, True, True]
    assert filter_sites(matrix, freqcut=0.3).tolist() == [False, False, False, False, True]
    assert filter_sites(matrix, missfreqcut=0.2).tolist() == [True, False, True, False, True]
    assert filter_sites(matrix, site_range=(2, 4)).tolist() == [False, False, True, True, False]
    with pytest.raises(ValueError):
        filter_sites(matrix, freqcut=1.5)


def test_subsample_is_sorted_and_reproducible(haploid_matrix):
    a = subsample(haploid_matrix, 4, np.random.default_rng(3))
    b = subsample(haploid_matrix, 4, np.random.default_rng(3))
    assert a.tolist() == b.tolist()
    assert a.tolist() == sorted(a.tolist())
    assert len(set(a.tolist())) == 4


def test_convert(haploid_matrix, haploid_locs):
    out, locs = convert(haploid_matrix, haploid_locs, site_range=(2, 6), nout=5, seed=1)
    assert out.n_seqs == 5
    assert out.n_sites == 4
    assert locs.positions.tolist() == [4.0, 8.0, 9.0, 12.0]
    assert locs.length == haploid_locs.length


def test_convert_without_sites_fails():
    matrix = AlleleMatrix(np.zeros((3, 4)))
    with pytest.raises(ValueError, match="No data to output"):
        convert(matrix)
