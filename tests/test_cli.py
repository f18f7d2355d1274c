import json

import numpy as np
import pandas as pd
import pytest

from conftest import synthetic_surface
from ldhat.cli import build_parser, main
from ldhat.utils.alignment import Locs
from ldhat.utils.io import read_locs, read_sites, write_lk_table, write_locs, write_sites
from ldhat.utils.pair_spectrum import build_pair_spectrum


@pytest.fixture
def inputs(tmp_path, haploid_matrix, haploid_locs):
    sites = tmp_path / "sites.txt"
    locs = tmp_path / "locs.txt"
    lk = tmp_path / "lk.txt"
    write_sites(sites, haploid_matrix)
    write_locs(locs, haploid_locs)
    spectrum = build_pair_spectrum(haploid_matrix, window=50)
    write_lk_table(lk, synthetic_surface(spectrum.registry))
    return {"sites": str(sites), "locs": str(locs), "lk": str(lk)}


def test_parser_requires_a_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_convert(tmp_path, inputs):
    prefix = str(tmp_path / "conv_")
    code = main(["-q", "convert", inputs["sites"], "--loc", inputs["locs"], "--only2",
                 "--sites", "0", "5", "--nout", "4", "--seed", "1", "--prefix", prefix])
    assert code == 0
    matrix = read_sites(prefix + "sites.txt")
    assert matrix.n_seqs == 4
    assert matrix.n_sites <= 5
    assert read_locs(prefix + "locs.txt").n_sites == matrix.n_sites
    freqs = pd.read_csv(prefix + "freqs.txt", sep="\t")
    assert len(freqs) == 8


def test_pairwise(tmp_path, inputs):
    prefix = str(tmp_path / "pw_")
    code = main(["-q", "pairwise", "--seq", inputs["sites"], "--loc", inputs["locs"],
                 "--lk", inputs["lk"], "--n_shuffle", "20", "--window_sites", "4",
                 "--seed", "3", "--plot", "--prefix", prefix])
    assert code == 0
    summary = json.loads(open(prefix + "summary.json").read())
    assert summary["n_pairs"] == 28
    assert summary["rmin"] >= 0
    assert 0.0 < summary["ld_distance_p"] <= 1.0
    curve = pd.read_csv(prefix + "curve.txt", sep="\t")
    assert summary["rho"] == pytest.approx(curve["rho"][curve["loglik"].idxmax()])
    types = pd.read_csv(prefix + "types.txt", sep="\t")
    assert types["count"].sum() == 28
    assert np.all(np.isfinite(types["max_loglik"]))
    for name in ("windows.txt", "windows.png", "curve.png"):
        assert (tmp_path / f"pw_{name}").exists()


def test_pairwise_with_simulated_table(tmp_path, inputs):
    prefix = str(tmp_path / "sim_")
    code = main(["-q", "pairwise", "--seq", inputs["sites"], "--loc", inputs["locs"],
                 "--window", "2", "--rcat", "3", "--rmax", "20", "--n_draws", "5",
                 "--n_shuffle", "0", "--skip_unsupported", "--seed", "1", "--prefix", prefix])
    assert code == 0
    assert (tmp_path / "sim_new_lk.txt").exists()


def test_interval(tmp_path, inputs):
    prefix = str(tmp_path / "iv_")
    code = main(["-q", "interval", "--seq", inputs["sites"], "--loc", inputs["locs"],
                 "--lk", inputs["lk"], "--n_update", "200", "--r_update", "10",
                 "--burnin", "20", "--bpen", "2", "--seed", "7", "--plot", "--prefix", prefix])
    assert code == 0
    rates = pd.read_csv(prefix + "rates.txt", sep="\t")
    assert len(rates) == 7
    final = pd.read_csv(prefix + "final_map.txt", sep="\t")
    assert final["size"].sum() == 7
    summary = json.loads(open(prefix + "summary.json").read())
    assert summary["n_samples"] == 18
    assert (tmp_path / "iv_rates.png").exists()


def test_errors_become_exit_status(tmp_path, inputs):
    assert main(["-q", "pairwise", "--seq", str(tmp_path / "missing.txt")]) == 1
    bad_locs = tmp_path / "bad_locs.txt"
    bad_locs.write_text("2 10 L\n1 2\n")
    assert main(["-q", "pairwise", "--seq", inputs["sites"], "--loc", str(bad_locs),
                 "--lk", inputs["lk"]]) == 1


def test_skip_flags_are_independent():
    parser = build_parser()
    args = parser.parse_args(["pairwise", "--seq", "s.txt", "--skip_unsupported"])
    assert args.skip_unsupported and not args.skip_invalid
    args = parser.parse_args(["interval", "--seq", "s.txt", "--skip_invalid"])
    assert args.skip_invalid and not args.skip_unsupported


def test_haploid_table_is_rejected_for_diploid_data(tmp_path, inputs, diploid_matrix):
    sites = tmp_path / "dip_sites.txt"
    locs = tmp_path / "dip_locs.txt"
    write_sites(sites, diploid_matrix)
    write_locs(locs, Locs(np.arange(1.0, diploid_matrix.n_sites + 1), 10.0, "L"))
    # inputs["lk"] is a haploid table
    code = main(["-q", "pairwise", "--seq", str(sites), "--loc", str(locs),
                 "--lk", inputs["lk"], "--skip_unsupported", "--skip_invalid",
                 "--n_shuffle", "0", "--prefix", str(tmp_path / "dip_")])
    assert code == 1
    assert not (tmp_path / "dip_summary.json").exists()
