import numpy as np
import pytest

from conftest import make_config, synthetic_surface
from ldhat.utils.alignment import Locs
from ldhat.utils.errors import UnsupportedConfiguration
from ldhat.utils.likelihood_surface import (
    LikelihoodSurface,
    PairwiseLikelihood,
    WindowEstimate,
    conversion_factor,
    interpolate_rows,
    window_estimates,
)
from ldhat.utils.pair_spectrum import build_pair_spectrum
from ldhat.utils.site_types import SiteTypeRegistry, canonicalize
from ldhat.utils.type_def import Ploidy


@pytest.fixture
def two_row_surface():
    configs = [make_config({(0, 0): 2, (1, 1): 2}), make_config({(0, 0): 3, (1, 1): 1})]
    values = np.log([[0.2, 0.2, 0.2], [0.4, 0.4, 0.4]])
    return LikelihoodSurface(configs, values, rmax=2.0, n_seqs=4)


# =============================================================================
# Surface construction and lookup
# =============================================================================

def test_grid_and_read_only_values(two_row_surface):
    np.testing.assert_allclose(two_row_surface.grid, [0.0, 1.0, 2.0])
    assert two_row_surface.rcat == 3
    assert two_row_surface.dr == pytest.approx(1.0)
    with pytest.raises(ValueError):
        two_row_surface.values[0, 0] = 0.0


def test_rows_are_keyed_by_canonical_form(two_row_surface):
    relabelled = make_config({(0, 1): 2, (1, 0): 2})
    assert relabelled in two_row_surface
    np.testing.assert_allclose(two_row_surface.row(relabelled), np.log(0.2))


def test_duplicate_rows_rejected():
    configs = [make_config({(0, 0): 2, (1, 1): 2}), make_config({(0, 1): 2, (1, 0): 2})]
    with pytest.raises(ValueError, match="duplicate"):
        LikelihoodSurface(configs, np.zeros((2, 3)), 2.0, 4)


def test_missing_data_uses_reduced_row():
    reduced = make_config({(0, 0): 2, (1, 1): 1})
    surface = LikelihoodSurface([reduced], np.log([[0.7, 0.7, 0.7]]), 2.0, n_seqs=4)
    config = make_config({(0, 0): 2, (1, 1): 1, (0, 3): 1})
    np.testing.assert_allclose(surface.row(config), np.log(0.7))


def test_missing_data_marginalised_from_full_rows(two_row_surface):
    # drawing 3 of 4 sequences: P = 0.2 * 1 + 0.4 * 3/4
    config = make_config({(0, 0): 2, (1, 1): 1, (0, 3): 1})
    np.testing.assert_allclose(two_row_surface.row(config), np.log(0.5))


def test_marginalisation_of_a_single_full_row_is_exact():
    full = make_config({(0, 0): 2, (1, 1): 2})
    surface = LikelihoodSurface([full], np.log([[0.1, 0.3, 0.5]]), 2.0, n_seqs=4)
    # every 3-of-4 subsample of {AB, AB, ab, ab} is {AB, AB, ab} up to relabelling
    row = surface.row(make_config({(0, 0): 2, (1, 1): 1, (3, 3): 1}))
    np.testing.assert_allclose(row, np.log([0.1, 0.3, 0.5]))


def test_degenerate_types_have_flat_rows(two_row_surface):
    np.testing.assert_array_equal(two_row_surface.row(make_config({(0, 0): 3, (0, 1): 1})),
                                  np.zeros(3))
    config = make_config({(0, 0): 2, (1, 0): 1, (3, 1): 1})
    np.testing.assert_array_equal(two_row_surface.row(config), np.zeros(3))


def test_unsupported_configurations():
    small = LikelihoodSurface([make_config({(0, 0): 2, (1, 1): 1})], np.zeros((1, 3)), 2.0, 4)
    with pytest.raises(UnsupportedConfiguration):
        small.row(make_config({(0, 0): 3, (1, 1): 1}))

    dead = LikelihoodSurface([make_config({(0, 0): 2, (1, 1): 2})],
                             np.full((1, 3), -np.inf), 2.0, 4)
    with pytest.raises(UnsupportedConfiguration):
        dead.row(make_config({(0, 0): 2, (1, 1): 2}))


def test_curve_skips_unsupported_types():
    surface = LikelihoodSurface([make_config({(0, 0): 2, (1, 1): 2})],
                                np.log([[0.1, 0.3, 0.5]]), 2.0, 4)
    reg = SiteTypeRegistry(n_seqs=4)
    reg.classify(make_config({(0, 0): 2, (1, 1): 2}))
    reg.classify(make_config({(0, 0): 2, (1, 1): 2}))
    reg.classify(make_config({(0, 0): 1, (0, 1): 1, (1, 0): 1, (1, 1): 1}))

    with pytest.raises(UnsupportedConfiguration):
        surface.log_likelihood_curve(reg)
    curve = surface.log_likelihood_curve(reg, skip_unsupported=True)
    np.testing.assert_allclose(curve, 2 * np.log([0.1, 0.3, 0.5]))
    _, unsupported = surface.type_rows(reg, skip_unsupported=True)
    assert unsupported == [1]


def test_surface_ploidy_must_match_the_data(diploid_matrix):
    haploid = LikelihoodSurface([make_config({(0, 0): 2, (1, 1): 2})],
                                np.log([[0.1, 0.3, 0.5]]), 2.0, n_seqs=4)
    # two homozygous individuals carry four chromosomes, but the rows are not
    # interchangeable with a haploid sample
    reg = SiteTypeRegistry(n_seqs=2, ploidy=Ploidy.DIPLOID)
    reg.classify(make_config({(0, 0): 1, (1, 1): 1}))
    with pytest.raises(UnsupportedConfiguration, match="diploid"):
        haploid.log_likelihood_curve(reg)
    with pytest.raises(UnsupportedConfiguration):
        haploid.log_likelihood_curve(reg, skip_unsupported=True)
    with pytest.raises(UnsupportedConfiguration):
        haploid.maximize_types(reg)

    spectrum = build_pair_spectrum(diploid_matrix, window=2)
    configs = spectrum.registry.configurations()
    mismatched = LikelihoodSurface(configs, np.zeros((len(configs), 3)), 2.0,
                                   diploid_matrix.n_seqs, Ploidy.HAPLOID)
    with pytest.raises(UnsupportedConfiguration):
        PairwiseLikelihood(mismatched, spectrum, np.arange(diploid_matrix.n_sites, dtype=float),
                           skip_unsupported=True)


def test_haploid_surface_rejects_heterozygote_cells():
    surface = LikelihoodSurface([make_config({(0, 0): 2, (1, 1): 2})],
                                np.log([[0.1, 0.3, 0.5]]), 2.0, n_seqs=4)
    with pytest.raises(UnsupportedConfiguration, match="heterozygote"):
        surface.row(make_config({(0, 2): 1, (1, 1): 2}))


# =============================================================================
# Composite likelihood
# =============================================================================

def test_curve_is_additive_over_disjoint_spectra(haploid_matrix):
    left = build_pair_spectrum(haploid_matrix.select_sites([0, 1, 2, 3]), window=3)
    right = build_pair_spectrum(haploid_matrix.select_sites([4, 5, 6, 7]), window=3)
    union = SiteTypeRegistry(haploid_matrix.n_seqs)
    union.merge(left.registry)
    union.merge(right.registry)
    surface = synthetic_surface(union)

    np.testing.assert_allclose(
        surface.log_likelihood_curve(union),
        surface.log_likelihood_curve(left) + surface.log_likelihood_curve(right),
    )


def test_maximize_prefers_smallest_rate_on_ties(two_row_surface):
    assert two_row_surface.maximize(np.array([1.0, 3.0, 3.0])) == (1.0, 3.0)
    with pytest.raises(ValueError):
        two_row_surface.maximize(np.zeros(4))


def test_maximize_types_caches_per_type_maximum(haploid_matrix):
    spectrum = build_pair_spectrum(haploid_matrix, window=3)
    surface = synthetic_surface(spectrum.registry)
    surface.maximize_types(spectrum.registry)
    for st in spectrum.registry:
        row = surface.row(st.configuration)
        assert st.max_loglik == pytest.approx(row.max())
        assert st.rate_at_max == pytest.approx(surface.grid[np.argmax(row)])


# =============================================================================
# Interpolation kernels
# =============================================================================

def test_interpolation_clamps_and_never_produces_nan():
    rows = np.array([[0.0, -1.0, -np.inf, -3.0]])
    types = np.zeros(6, dtype=np.int64)
    rho = np.array([1.0, 0.5, 2.0, 1.5, 10.0, 2.5])
    expected = [-1.0, -0.5, -np.inf, -np.inf, -3.0, -np.inf]
    for kernel in (interpolate_rows, interpolate_rows.python):
        out = kernel(rows, types, rho, 1.0)
        assert not np.isnan(out).any()
        np.testing.assert_array_equal(out, expected)


def test_conversion_factor():
    factor = conversion_factor(np.array([0.0, 1e-9, 100.0]), 1.0)
    assert factor[0] == 2.0
    assert factor[1] == pytest.approx(2.0)
    assert factor[2] == pytest.approx(0.02)


# =============================================================================
# Distance-aware likelihood
# =============================================================================

@pytest.fixture
def pairwise(haploid_matrix, haploid_locs):
    spectrum = build_pair_spectrum(haploid_matrix, window=7)
    surface = synthetic_surface(spectrum.registry)
    return PairwiseLikelihood(surface, spectrum, haploid_locs.positions)


def test_pair_rho_integrates_rates(haploid_matrix):
    spectrum = build_pair_spectrum(haploid_matrix, window=7)
    locs = Locs.contiguous(haploid_matrix.n_sites)
    likelihood = PairwiseLikelihood(synthetic_surface(spectrum.registry), spectrum, locs.positions)
    rho = likelihood.pair_rho(np.full(likelihood.n_intervals, 0.25))
    span = likelihood.pair_sites[:, 1] - likelihood.pair_sites[:, 0]
    np.testing.assert_allclose(rho, 0.25 * span)

    rates = np.arange(1, likelihood.n_intervals + 1, dtype=float)
    rho = likelihood.pair_rho(rates)
    for (i, j), value in zip(likelihood.pair_sites, rho):
        assert value == pytest.approx(rates[i:j].sum())


def test_incremental_update_matches_full_evaluation(pairwise):
    rates = np.full(pairwise.n_intervals, 0.3)
    pair_ll = pairwise.pair_logliks(rates)
    snapshot = pair_ll.copy()

    changed = rates.copy()
    changed[2:5] = 0.9
    pairs, values = pairwise.update(pair_ll, changed, 2, 5)
    np.testing.assert_array_equal(pair_ll, snapshot)

    updated = pair_ll.copy()
    updated[pairs] = values
    np.testing.assert_allclose(updated, pairwise.pair_logliks(changed))
    untouched = np.setdiff1d(np.arange(pairwise.n_pairs), pairs)
    sites = pairwise.pair_sites[untouched]
    assert np.all((sites[:, 0] >= 5) | (sites[:, 1] <= 2))


def test_curve_matches_constant_maps(pairwise):
    candidates = np.array([0.1, 0.5, 1.0])
    curve = pairwise.curve(candidates)
    for value, rate in zip(curve, candidates):
        assert value == pytest.approx(pairwise.total(np.full(pairwise.n_intervals, rate)))


def test_pairwise_arguments(haploid_matrix, haploid_locs):
    spectrum = build_pair_spectrum(haploid_matrix, window=2)
    surface = synthetic_surface(spectrum.registry)
    with pytest.raises(ValueError):
        PairwiseLikelihood(surface, spectrum, haploid_locs.positions[:-1])
    with pytest.raises(ValueError):
        PairwiseLikelihood(surface, spectrum, haploid_locs.positions, model="C")
    gc = PairwiseLikelihood(surface, spectrum, haploid_locs.positions, model="C",
                            tract_length=2.0)
    np.testing.assert_allclose(gc.factor, conversion_factor(gc.distance, 2.0))
    with pytest.raises(ValueError):
        gc.pair_rho(np.ones(3))


def test_unsupported_pairs_are_dropped(haploid_matrix, haploid_locs):
    spectrum = build_pair_spectrum(haploid_matrix, window=7)
    last = len(spectrum.registry) - 1
    surface = synthetic_surface(spectrum.registry.filter(range(last)))
    with pytest.raises(UnsupportedConfiguration):
        PairwiseLikelihood(surface, spectrum, haploid_locs.positions)
    likelihood = PairwiseLikelihood(surface, spectrum, haploid_locs.positions,
                                    skip_unsupported=True)
    assert likelihood.unsupported == [last]
    assert likelihood.n_pairs == spectrum.n_pairs - spectrum.registry[last].count


def test_window_estimates(pairwise):
    frame = window_estimates(pairwise, width=4, step=2)
    assert list(frame.columns) == list(WindowEstimate._fields)
    assert frame["start_site"].tolist() == [0, 2, 4]
    np.testing.assert_allclose(frame["rate"], frame["rho"] / (frame["end_pos"] - frame["start_pos"]))
    with pytest.raises(ValueError):
        window_estimates(pairwise, width=1)


# =============================================================================
# Simulated surfaces
# =============================================================================

def test_from_simulation_gives_finite_rows():
    target = make_config({(0, 0): 1, (1, 0): 1, (1, 1): 1})
    surface = LikelihoodSurface.from_simulation([target], n_seqs=3, theta=0.01, rcat=3,
                                                rmax=4.0, n_draws=30, seed=1)
    assert len(surface) == 1
    assert surface.values.shape == (1, 3)
    assert np.all(np.isfinite(surface.values))
    assert tuple(surface.configurations[0]) == canonicalize(target)
