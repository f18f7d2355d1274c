import numpy as np
import pytest

from ldhat.utils.alignment import AlleleMatrix, Locs
from ldhat.utils.likelihood_surface import LikelihoodSurface
from ldhat.utils.site_types import SiteTypeRegistry
from ldhat.utils.type_def import CONFIG_SIZE, Ploidy, cell


def make_config(cells):
    """16-cell configuration from a ``{(code_a, code_b): count}`` mapping."""
    config = np.zeros(CONFIG_SIZE, dtype=np.int64)
    for (a, b), k in cells.items():
        config[cell(a, b)] = k
    return config


def synthetic_surface(registry: SiteTypeRegistry, rmax: float = 10.0, rcat: int = 21,
                      seed: int = 0) -> LikelihoodSurface:
    """Finite, smooth rows for every type of ``registry``."""
    rng = np.random.default_rng(seed)
    grid = np.linspace(0.0, rmax, rcat)
    configs = registry.configurations()
    centers = rng.uniform(0.0, rmax, size=len(configs))
    values = -0.5 * ((grid[None, :] - centers[:, None]) / (0.3 * rmax)) ** 2 - 1.0
    return LikelihoodSurface(configs, values, rmax, registry.n_seqs, registry.ploidy)


@pytest.fixture
def haploid_matrix():
    # 6 sequences x 8 sites, allele codes in LDhat's 0..3 convention
    data = np.array([
        [0, 1, 2, 3, 0, 1, 0, 2],
        [0, 1, 2, 3, 1, 1, 0, 2],
        [1, 0, 2, 1, 1, 0, 0, 3],
        [1, 0, 0, 1, 0, 0, 1, 3],
        [0, 0, 0, 3, 1, 1, 1, 2],
        [1, 1, 0, 1, 0, 0, 1, 3],
    ])
    return AlleleMatrix(data, Ploidy.HAPLOID)


@pytest.fixture
def haploid_locs():
    return Locs(np.array([1.0, 3.0, 4.0, 8.0, 9.0, 12.0, 15.0, 16.0]), 20.0, "L")


@pytest.fixture
def diploid_matrix():
    data = np.array([
        [0, 1, 2, 0, 1],
        [2, 1, 0, 0, 2],
        [1, 2, 2, 1, 0],
        [0, 0, -1, 2, 1],
        [2, 1, 1, 1, 0],
    ])
    return AlleleMatrix(data, Ploidy.DIPLOID)
