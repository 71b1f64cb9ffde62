import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

import config


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def small_params():
    species_params = {**config.SPECIES_PARAMS, 'S': 4}
    landscape_params = {**config.LANDSCAPE_PARAMS, 'n': 4, 'n_regions_side': 2, 'n_moda': 4}
    simulation_params = {**config.SIMULATION_PARAMS, 'max_tick': 5, 'K': 5, 'n_rep': 2}
    sampling_params = dict(config.SAMPLING_PARAMS)
    return species_params, landscape_params, simulation_params, sampling_params


def simulate_glmm_data(rng, slope=-0.8, sd_species=0.5, sd_site=0.3, sd_neutral=0.8,
                       family='poisson', size=2.0, n_site=40, n_species=8, n_region=4):
    """Counts drawn from a known log-linear mixed model."""
    site = np.repeat(np.arange(n_site), n_species)
    species = np.tile(np.arange(n_species), n_site)
    region = site % n_region
    mismatch = rng.normal(size=len(site))
    b_species = rng.normal(0, sd_species, n_species)
    b_site = rng.normal(0, sd_site, n_site)
    b_neutral = rng.normal(0, sd_neutral, (n_species, n_region))
    eta = 1 + slope * mismatch + b_species[species] + b_site[site] + b_neutral[species, region]
    mu = np.exp(eta)
    if family == 'poisson':
        y = rng.poisson(mu)
    else:
        y = rng.negative_binomial(size, size / (size + mu))
    return pd.DataFrame({'site': site.astype(str), 'species': species.astype(str),
                         'region': region.astype(str), 'mismatch_true': mismatch,
                         'mismatch_wrong': rng.normal(size=len(site)), 'abundance': y})


@pytest.fixture
def glmm_data(rng):
    return simulate_glmm_data(rng)


@pytest.fixture
def make_glmm_data():
    return simulate_glmm_data
