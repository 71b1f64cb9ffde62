import numpy as np
import pytest
import scipy.stats

import metacommunity_function as model


def sim_kwargs(n=4, S=3, K=5, max_tick=5, disp_dist=1.0, rng=None, struct='gradient_linear'):
    species = model.species_pool(S, 0.1, rng)
    trait = species['trait_true'].to_numpy()
    _, env = model.landscape(n, struct, [0, 1], 4, 5, 2, rng)
    return dict(max_tick=max_tick, S=S, omega=0.15, Environmental_trait=trait,
                Fecundity=0.5, Ext_seed_rain=0.1, mu=0.2, We=1, Wc=0, K=K,
                Aij=model.interaction_matrix(trait, 0.1), Environment_matrix=env,
                n=n, kernel=model.dispersal_kernel(n, disp_dist))


# =============================================================================
# Set-up
# =============================================================================

def test_gen_corr_traits_are_uniform_and_correlated(rng):
    U = model.gen_corr_traits(0.9, 500, rng)
    assert U.shape == (500, 2)
    assert np.all((U > 0) & (U < 1))
    assert scipy.stats.spearmanr(U[:, 0], U[:, 1])[0] > 0.8


def test_gen_corr_traits_accepts_perfect_correlation(rng):
    U = model.gen_corr_traits(1, 50, rng)
    assert scipy.stats.spearmanr(U[:, 0], U[:, 1])[0] > 0.99


def test_species_pool_columns(rng):
    species = model.species_pool(6, 0.1, rng)
    assert list(species.columns) == ['species', 'trait_true', 'trait_wrong']
    assert len(species) == 6


def test_dist_torus_wraps_borders():
    d = model.dist_torus(model.grid_coord(4))
    # (0, 0) and (3, 0) are neighbours on the torus
    assert d[0, 3] == pytest.approx(1)
    assert d[0, 5] == pytest.approx(np.sqrt(2))
    assert np.allclose(d, d.T)


@pytest.mark.parametrize('struct', ['homogeneous', 'random', 'gradient', 'gradient_linear', 'mosaic'])
def test_env_generation_structures(struct, rng):
    env = model.Env_generation(4, struct, [0, 1], 4, 2, rng)
    assert env.shape == (4, 4)
    assert env.min() >= 0 and env.max() <= 1


def test_env_generation_values():
    assert np.all(model.Env_generation(4, 'homogeneous', [0, 1], 4, 2) == 0.5)
    linear = model.Env_generation(4, 'gradient_linear', [0, 1], 4, 2)
    assert np.allclose(linear[0], [0, 1 / 3, 2 / 3, 1])
    assert np.allclose(linear[0], linear[3])
    assert len(np.unique(model.Env_generation(4, 'gradient', [0, 1], 4, 2))) == 4


def test_env_generation_rejects_unknown_structure():
    with pytest.raises(ValueError):
        model.Env_generation(4, 'stripes', [0, 1], 4, 2)
    with pytest.raises(ValueError):
        model.Env_generation(4, 'gradient', [0, 1], 3, 2)


def test_region_labels():
    regions = model.region_labels(4, 2)
    assert np.array_equal(np.bincount(regions), [4, 4, 4, 4])
    assert regions[0] == 0 and regions[3] == 1 and regions[15] == 3
    with pytest.raises(ValueError):
        model.region_labels(5, 2)


def test_landscape_sites(rng):
    sites, env = model.landscape(4, 'gradient_linear', [0, 1], 4, 2, 2, rng)
    assert list(sites.columns) == ['site', 'x', 'y', 'region', 'env']
    assert len(sites) == 16
    assert np.allclose(sites['env'], env.ravel())


def test_dispersal_kernel():
    kernel = model.dispersal_kernel(4, 1.0)
    assert np.allclose(kernel.sum(1), 1)
    assert kernel[0, 0] > kernel[0, 1] > kernel[0, 10]
    assert np.allclose(model.dispersal_kernel(4, None), 1 / 16)
    with pytest.raises(ValueError):
        model.dispersal_kernel(4, -1)


def test_interaction_matrix():
    Aij = model.interaction_matrix(np.array([0.1, 0.2, 0.9]), 0.1)
    assert np.allclose(np.diag(Aij), 1)
    assert np.allclose(Aij, Aij.T)
    assert Aij[0, 1] > Aij[0, 2]


def test_init_commu_fills_cells(rng):
    commu = model.init_commu(5, 3, 4, rng)
    assert commu.shape == (3, 4, 4)
    assert np.all(commu.sum(0) == 5)

# =============================================================================
# Simulation
# =============================================================================

def test_stochastic_simulation_respects_capacity(rng):
    kwargs = sim_kwargs(rng=rng)
    commu = model.init_commu(5, 3, 4, rng)
    final, occupation, density, abundances = model.Simulation_model(Community_matrix=commu, dynamics='stochastic',
                                                                    rng=rng, **kwargs)
    assert final.shape == (3, 4, 4)
    assert np.all(final.sum(0) <= 5)
    assert abundances.shape == (6, 3)
    assert occupation.shape == (6,)
    assert np.allclose(density.sum(1), 1)
    # The initial community is not modified
    assert np.all(commu.sum(0) == 5)


def test_deterministic_simulation_does_not_depend_on_rng(rng):
    kwargs = sim_kwargs(rng=rng)
    commu = model.init_commu(5, 3, 4, rng)
    a = model.Simulation_model(Community_matrix=commu, dynamics='deterministic', rng=1, **kwargs)[0]
    b = model.Simulation_model(Community_matrix=commu, dynamics='deterministic', rng=2, **kwargs)[0]
    assert np.allclose(a, b)
    assert np.allclose(a.sum(0), 5)


def test_environmental_filter_sorts_species_along_gradient(rng):
    n = 4
    trait = np.array([0.1, 0.9])
    _, env = model.landscape(n, 'gradient_linear', [0, 1], 4, 5, 2)
    commu = model.init_commu(10, 2, n, rng)
    final = model.Simulation_model(max_tick=30, Community_matrix=commu, S=2, omega=0.15,
                                   Environmental_trait=trait, Fecundity=0.5, Ext_seed_rain=1,
                                   mu=0.2, We=1, Wc=0, K=10, Aij=model.interaction_matrix(trait, 0.1),
                                   Environment_matrix=env, n=n, kernel=model.dispersal_kernel(n, None),
                                   dynamics='deterministic')[0]
    # Column 0 is env = 0, column n - 1 is env = 1
    assert final[0, :, 0].sum() > final[1, :, 0].sum()
    assert final[1, :, -1].sum() > final[0, :, -1].sum()


def test_simulation_rejects_unknown_dynamics(rng):
    kwargs = sim_kwargs(rng=rng)
    with pytest.raises(ValueError):
        model.Simulation_model(Community_matrix=model.init_commu(5, 3, 4, rng), dynamics='chaotic', **kwargs)


def test_replicate_runs_average(rng):
    kwargs = sim_kwargs(rng=rng)
    commu = model.init_commu(5, 3, 4, rng)
    mean, runs = model.replicate_runs(3, commu, kwargs, seed=7)
    assert runs.shape == (3, 3, 4, 4)
    assert np.allclose(mean, runs.mean(0))
    # Same seed, same runs
    mean2, _ = model.replicate_runs(3, commu, kwargs, seed=7)
    assert np.allclose(mean, mean2)
    with pytest.raises(ValueError):
        model.replicate_runs(0, commu, kwargs)

# =============================================================================
# Sampling
# =============================================================================

def test_sample_community_poisson(rng):
    snapshot = np.full((3, 4, 4), 2.0)
    counts, site_id = model.sample_community(snapshot, 'poisson', rng=rng)
    assert counts.shape == (16, 3)
    assert np.array_equal(site_id, np.arange(16))
    zero, _ = model.sample_community(np.zeros((3, 4, 4)), 'negbin', size=1.0, rng=rng)
    assert np.all(zero == 0)


def test_sample_community_subset_of_sites(rng):
    counts, site_id = model.sample_community(np.ones((3, 4, 4)), 'negbin', size=2.0, n_sites=5, rng=rng)
    assert counts.shape == (5, 3)
    assert len(np.unique(site_id)) == 5
    assert np.all(np.diff(site_id) > 0)


def test_sample_community_rejects_bad_arguments(rng):
    snapshot = np.ones((3, 4, 4))
    with pytest.raises(ValueError):
        model.sample_community(snapshot, 'binomial', rng=rng)
    with pytest.raises(ValueError):
        model.sample_community(snapshot, 'negbin', size=None, rng=rng)
    with pytest.raises(ValueError):
        model.sample_community(snapshot, 'poisson', n_sites=17, rng=rng)


def test_community_to_dataframe(rng):
    species = model.species_pool(3, 0.1, rng)
    sites, env = model.landscape(4, 'gradient_linear', [0, 1], 4, 5, 2)
    counts, site_id = model.sample_community(np.ones((3, 4, 4)), 'poisson', n_sites=10, rng=rng)
    dtf = model.community_to_dataframe(counts, site_id, sites, species)
    assert len(dtf) == 30
    for col in ['site', 'species', 'region', 'env', 'trait_true', 'trait_wrong',
                'abundance', 'mismatch_true', 'mismatch_wrong']:
        assert col in dtf.columns
    assert dtf['mismatch_true'].mean() == pytest.approx(0, abs=1e-10)
    assert dtf['mismatch_true'].to_numpy().std() == pytest.approx(1)
    assert dtf['abundance'].sum() == counts.sum()


def test_shannon_div():
    assert model.shannon_div(np.ones(4) / 4)[0] == pytest.approx(4)
    assert model.shannon_div(np.array([[1.0, 0, 0]]))[0] == pytest.approx(1)


def test_competition_reduces_germination_of_residents(rng):
    n, S = 2, 2
    trait = np.array([0.5, 0.5])
    Aij = model.interaction_matrix(trait, 0.1)
    # Cell 0 holds 4 individuals of species 0 and one free spot
    commu = np.zeros((S, n, n), dtype=np.int64)
    commu[0, 0, 0] = 4
    out = model.Colonization(commu.astype(np.float64), trait, 0.15, np.full((n, n), 0.5), n, S,
                             Aij, We=1, Wc=10, Fecundity=0.5, Ext_seed_rain=1, K=5,
                             kernel=model.dispersal_kernel(n, None), dynamics='deterministic')
    assert out.sum() == pytest.approx(commu.sum() + 3 * 5)
    # Identical niches: full competition from the residents, no recruit in cell 0
    assert out[:, 0, 0].sum() == pytest.approx(4)


def test_colonization_leaves_input_unchanged(rng):
    n, S = 3, 2
    trait = np.array([0.2, 0.8])
    commu = model.init_commu(4, S, n, rng)
    before = commu.copy()
    out = model.Colonization(commu, trait, 0.15, np.full((n, n), 0.5), n, S,
                             model.interaction_matrix(trait, 0.1), We=1, Wc=0, Fecundity=0.5,
                             Ext_seed_rain=1, K=10, kernel=model.dispersal_kernel(n, 1.0),
                             dynamics='stochastic', rng=rng)
    np.testing.assert_array_equal(commu, before)
    assert out.sum() > before.sum()
    assert np.all(out >= before)
