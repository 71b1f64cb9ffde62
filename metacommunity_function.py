# -*- coding: utf-8 -*-
"""
Created on October 2026

Landscape, species pool, metacommunity simulator and sampling functions.
"""
# Import python modules
import copy
import logging

import numpy as np
import pandas as pd
import scipy
import scipy.stats
import scipy.linalg
from joblib import Parallel, delayed
from sklearn.preprocessing import scale
from tqdm import tqdm

LOGGER = logging.getLogger(__name__)

DYNAMICS = ('deterministic', 'stochastic')
FAMILIES = ('poisson', 'negbin')
ENV_STRUCTURES = ('homogeneous', 'random', 'gradient', 'gradient_linear', 'mosaic')

#%%
# =============================================================================
# I. Simulation set-up function (species pool and landscape)
# =============================================================================

def gen_corr_traits(r, S, rng=None):
    """
    Generate two correlated uniform traits for species.

    Parameters:
    r (float): Correlation coefficient.
    S (int): Number of species.
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: (S, 2) matrix of traits in [0, 1].
    """
    rng = np.random.default_rng(rng)
    rho = 2 * np.sin(r * np.pi / 6)  # Convert correlation coefficient to the gaussian scale
    rho = min(rho, 1 - 1e-9)  # r = 1 gives a singular matrix
    P = scipy.linalg.toeplitz(np.array([1, rho]))
    U = scipy.stats.norm.cdf(np.dot(rng.normal(size=(S, 2)),
                                    scipy.linalg.cholesky(P)))  # Gaussian copula via the Cholesky decomposition
    return U

def species_pool(S, wrong_correl, rng=None):
    """
    Draw the species pool: the true environmental optimum of each species and
    a surrogate ("wrong") trait only weakly correlated with it.

    Parameters:
    S (int): Number of species.
    wrong_correl (float): Correlation between the true and the wrong trait.
    rng (numpy.random.Generator): Random generator.

    Returns:
    pandas.DataFrame: One row per species with 'species', 'trait_true', 'trait_wrong'.
    """
    traits = gen_corr_traits(wrong_correl, S, rng)
    return pd.DataFrame({'species': np.arange(S),
                         'trait_true': traits[:, 0],
                         'trait_wrong': traits[:, 1]})

def dist_torus(coord):
    """
    Compute distance matrix for a torus 2D space.

    Parameters:
    coord (numpy.ndarray): Array of coordinates with shape (N, 2) where N is the number of points.

    Returns:
    numpy.ndarray: Distance matrix for the torus 2D space.
    """
    x = coord[:, 0]
    y = coord[:, 1]
    dx = np.abs(x[:, np.newaxis] - x)
    dy = np.abs(y[:, np.newaxis] - y)
    # Wrap around the borders
    max_x = np.max(dx) + 1
    max_y = np.max(dy) + 1
    dx = np.minimum(dx, max_x - dx)
    dy = np.minimum(dy, max_y - dy)
    return np.sqrt(dx**2 + dy**2)

def grid_coord(n):
    """Coordinates (x, y) of the cells of a n x n lattice, in row-major order."""
    xx, yy = np.meshgrid(np.arange(n), np.arange(n))
    return np.column_stack((xx.ravel(), yy.ravel()))

def env_set(n, R, type_, auto_corr, rng=None):
    """
    Generate environmental settings for a landscape grid.

    Parameters:
    n (int): Side length of the grid.
    R (float): Range of environmental values.
    type_ (str): Type of environment ('mosaic' or 'random').
    auto_corr (float): Autocorrelation range of the environment across the landscape.
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: 2D array representing the environmental values across the grid.
    """
    rng = np.random.default_rng(rng)
    grid_size = n ** 2
    if type_ == 'mosaic':
        # Gaussian field with an exponential covariance
        z = rng.normal(0, 0.025, grid_size)
        distance_matrix = dist_torus(grid_coord(n))
        cov_matrix = 0.025 * np.exp(-distance_matrix / auto_corr)
        y_sim = rng.multivariate_normal(z, cov_matrix, method='eigh')
        # Transform data from normal to uniform
        ranks = scipy.stats.rankdata(y_sim, method='ordinal')
        y_sim = scipy.stats.uniform.ppf(ranks / (grid_size + 1))
        # Rescale data to a given range (0 - R)
        lyy = (y_sim - np.min(y_sim)) * R / (np.max(y_sim) - np.min(y_sim))
    elif type_ == 'random':
        lyy = np.linspace(0, R, grid_size)
        rng.shuffle(lyy)
    else:
        raise ValueError("Unknown environment type: %s" % type_)
    return np.asarray(lyy).reshape((n, n))

def Env_generation(n, struct, env_range, n_moda, auto_corr, rng=None):
    """
    Set up the generation of the Environment matrix.

    Parameters:
    n (int): Size of the landscape grid (n x n).
    struct (str): Structure of the environment ('homogeneous', 'random', 'gradient', 'gradient_linear', 'mosaic').
    env_range (tuple or list): Range of environmental values.
    n_moda (int): Number of environmental values for the 'gradient' structure.
    auto_corr (float): Autocorrelation of the environment for the 'mosaic' structure.
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: Environment matrix for the landscape grid.
    """
    if struct == 'homogeneous':
        Environment_matrix = np.ones((n, n)) * np.mean(env_range)
    elif struct == 'random':
        Environment_matrix = env_set(n, max(env_range), 'random', auto_corr, rng)
    elif struct == 'gradient':
        if (n**2) % n_moda != 0:
            raise ValueError("n**2 must be a multiple of n_moda for the 'gradient' structure")
        dta_env = np.repeat(np.linspace(min(env_range), max(env_range), n_moda), n**2 // n_moda)  # Abrupt gradient
        Environment_matrix = dta_env.reshape((n, n))
    elif struct == 'gradient_linear':
        # Smooth gradient along the x axis
        Environment_matrix = np.tile(np.linspace(min(env_range), max(env_range), n), (n, 1))
    elif struct == 'mosaic':
        Environment_matrix = env_set(n, max(env_range), 'mosaic', auto_corr, rng)
    else:
        raise ValueError("Unknown environment structure: %s (expected one of %s)" % (struct, ENV_STRUCTURES))
    return Environment_matrix.astype(np.float64)

def region_labels(n, n_regions_side):
    """
    Cut the n x n grid into n_regions_side x n_regions_side square regions.

    Returns:
    numpy.ndarray: Region label of each cell, in row-major order.
    """
    if n % n_regions_side != 0:
        raise ValueError("n (%d) must be a multiple of n_regions_side (%d)" % (n, n_regions_side))
    block = n // n_regions_side
    coord = grid_coord(n)
    return (coord[:, 1] // block) * n_regions_side + coord[:, 0] // block

def landscape(n, struct, env_range, n_moda, auto_corr, n_regions_side, rng=None):
    """
    Build the sites of the landscape.

    Returns:
    tuple: (sites DataFrame with 'site', 'x', 'y', 'region', 'env'; Environment_matrix)
    """
    Environment_matrix = Env_generation(n, struct, env_range, n_moda, auto_corr, rng)
    coord = grid_coord(n)
    sites = pd.DataFrame({'site': np.arange(n**2),
                          'x': coord[:, 0],
                          'y': coord[:, 1],
                          'region': region_labels(n, n_regions_side),
                          'env': Environment_matrix.ravel()})
    return sites, Environment_matrix

def dispersal_kernel(n, disp_dist):
    """
    Row-normalized negative exponential dispersal kernel on the torus.

    Parameters:
    n (int): Size of the landscape grid.
    disp_dist (float or None): Mean dispersal distance, None or inf for global dispersal.

    Returns:
    numpy.ndarray: (n**2, n**2) kernel, entry [i, j] is the share of seeds from cell j landing in cell i.
    """
    if disp_dist is None or np.isinf(disp_dist):
        return np.full((n**2, n**2), 1 / n**2)
    if disp_dist <= 0:
        raise ValueError("disp_dist must be positive")
    kernel = np.exp(-dist_torus(grid_coord(n)) / disp_dist)
    return kernel / np.sum(kernel, 1)[:, np.newaxis]

def interaction_matrix(trait, sigma_c):
    """
    Symmetric competition from the overlap of gaussian niches
    (adapted from Scheffer et.al., 2006, without the border correction).

    Parameters:
    trait (numpy.ndarray): Trait of the species.
    sigma_c (float): Competition breadth.

    Returns:
    numpy.ndarray: (S, S) interaction matrix with ones on the diagonal.
    """
    trait = np.asarray(trait, dtype=np.float64)
    return np.exp(-(trait[:, np.newaxis] - trait[np.newaxis, :])**2 / (4 * sigma_c**2))

def init_commu(K, S, n, rng=None):
    """
    Set the initial state with equal abundance for all species and random positions for individuals.

    Parameters:
    K (int): Carrying capacity of the cells.
    S (int): Number of species.
    n (int): Size of the landscape grid (n x n).
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: 3D array representing the initial community with shape (S, n, n).
    """
    rng = np.random.default_rng(rng)
    p = np.ones(S) / S
    commu = rng.multinomial(K, p, size=n**2)
    return commu.T.reshape(S, n, n)

# =============================================================================
# II. Simulation model function
# =============================================================================

def seed_competition(Community_matrix, Aij, S, n):
    """
    Compute seed competition.

    Parameters:
    Community_matrix (numpy.ndarray): Matrix with the position of each individual.
    Aij (numpy.ndarray): Interaction matrix.
    S (int): Number of species.
    n (int): Size of the space grid.

    Returns:
    numpy.ndarray: (n**2, S) seed competition values.
    """
    Commu = Community_matrix.reshape(-1, n**2).T.astype(np.float64)
    return np.dot(Commu, Aij)

def lottery(cells, free, weights, rng):
    """
    Lottery competition for the free space of each cell.

    Parameters:
    cells (numpy.ndarray): Index of the cells with free space.
    free (numpy.ndarray): Number of free spaces in these cells.
    weights (numpy.ndarray): (n**2, S) recruitment weights.
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: (m, S) number of recruits per cell and species.
    """
    out = np.zeros((len(cells), weights.shape[1]), dtype=np.int64)
    for i in range(len(cells)):
        w = weights[cells[i], :]
        total = np.sum(w)
        if total > 0 and not np.isnan(w).any():
            out[i, :] = rng.multinomial(free[i], w / total)
    return out

def expected_recruits(cells, free, weights):
    """Deterministic counterpart of the lottery: free space split proportionally to the weights."""
    w = weights[cells, :]
    total = np.sum(w, 1)
    total[total == 0] = np.inf  # No recruit where no seed can germinate
    return free[:, np.newaxis] * w / total[:, np.newaxis]

def Colonization(Community_matrix, Environmental_trait, omega, Environment_matrix,
                 n, S, Aij, We, Wc, Fecundity, Ext_seed_rain, K, kernel,
                 dynamics='stochastic', rng=None):
    """
    Seed production and colonization function.

    Compute the seed rain received by each cell, the germination probability of
    the seeds given the environmental filter and the competition, and fill the
    free space of each cell.

    Parameters:
    Community_matrix (numpy.ndarray): (S, n, n) community.
    Environmental_trait (numpy.ndarray): Environmental optimum of species.
    omega (float): Width of the species niche.
    Environment_matrix (numpy.ndarray): Matrix representing the environmental conditions.
    n (int): Size of the space grid.
    S (int): Number of species.
    Aij (numpy.ndarray): Interaction matrix.
    We (float): Weight of the environmental filter.
    Wc (float): Weight of the competition.
    Fecundity (float): Number of seed produced per individual.
    Ext_seed_rain (float): External migration rate.
    K (int): Carrying capacity of the cells.
    kernel (numpy.ndarray): Dispersal kernel.
    dynamics (str): 'stochastic' (lottery) or 'deterministic' (expected recruitment).
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: Updated community, Community_matrix is left unchanged.
    """
    rng = np.random.default_rng(rng)
    commu = Community_matrix.reshape(-1, n**2).T.copy()

    # Environmental filtering (gaussian, on the log scale)
    log_filter = -(Environmental_trait[np.newaxis, :] - Environment_matrix.reshape(n**2, 1))**2 / (2 * omega**2)

    with np.errstate(divide='ignore'):
        log_proba = We * log_filter
        if Wc > 0:
            seed_comp = seed_competition(Community_matrix, Aij, S, n)
            # Normalization of the interaction by the number of competitors
            ab_per_cell = np.sum(commu, 1).astype(np.float64)
            ab_per_cell[ab_per_cell == 0] = 1  # Empty cells have no competition anyway
            seed_comp = np.clip(1 - seed_comp / ab_per_cell[:, np.newaxis], 0, 1)
            log_proba = log_proba + Wc * np.log(seed_comp)
    seed_proba = np.exp(log_proba)

    # Seed rain: local dispersal from the kernel and external immigration
    seed_rain = np.dot(kernel, commu) * Fecundity + Ext_seed_rain / S
    weights = seed_proba * seed_rain

    # Free space in each cell
    dispo = K - np.sum(commu, 1)
    dispo = np.vstack((np.arange(0, n**2), dispo))
    dispo = dispo[:, dispo[1, :] > 0]
    cells = dispo[0, :].astype(np.int64)

    if dynamics == 'stochastic':
        recruits = lottery(cells, dispo[1, :].astype(np.int64), weights, rng)
    else:
        recruits = expected_recruits(cells, dispo[1, :], weights)
    commu[cells, :] += recruits
    return commu.T.reshape(S, n, n)

def Simulation_model(max_tick, Community_matrix, S, omega, Environmental_trait,
                     Fecundity, Ext_seed_rain, mu, We, Wc, K, Aij,
                     Environment_matrix, n, kernel, dynamics='stochastic', rng=None):
    """
    Run the community assembly simulation model.

    Parameters:
    max_tick (int): Number of ticks.
    Community_matrix (numpy.ndarray): (S, n, n) initial community.
    S (int): Number of species.
    omega (float): Breadth of the species niche.
    Environmental_trait (numpy.ndarray): Environmental optimum of species.
    Fecundity (float): Number of seed produced per individual.
    Ext_seed_rain (float): External migration rate.
    mu (float): Individual mortality rate.
    We (float): Weight on environmental filter.
    Wc (float): Weight on competition.
    K (int): Carrying capacity of the cells.
    Aij (numpy.ndarray): Interaction matrix.
    Environment_matrix (numpy.ndarray): Environmental value of each cell.
    n (int): Size of the space.
    kernel (numpy.ndarray): Dispersal kernel.
    dynamics (str): 'deterministic' or 'stochastic'.
    rng (numpy.random.Generator): Random generator.

    Returns:
    list: Final community, occupation, relative density and abundances over time.
    """
    if dynamics not in DYNAMICS:
        raise ValueError("dynamics must be one of %s, got %s" % (DYNAMICS, dynamics))
    rng = np.random.default_rng(rng)
    Community_matrix = copy.deepcopy(Community_matrix)
    if dynamics == 'deterministic':
        Community_matrix = Community_matrix.astype(np.float64)
    Abundances = [np.sum(Community_matrix, (1, 2))]
    occupation = [np.sum(np.sum(Community_matrix, 0) > 0) / n**2]

    for tick in range(max_tick):
        # Individual mortality
        if dynamics == 'stochastic':
            alive = Community_matrix > 0
            Community_matrix[alive] = rng.binomial(Community_matrix[alive], 1 - mu)
        else:
            Community_matrix = Community_matrix * (1 - mu)

        # Seed production and colonization
        Community_matrix = Colonization(Community_matrix=Community_matrix,
                                        Environmental_trait=Environmental_trait,
                                        omega=omega,
                                        Environment_matrix=Environment_matrix,
                                        n=n,
                                        S=S,
                                        Aij=Aij,
                                        We=We,
                                        Wc=Wc,
                                        Fecundity=Fecundity,
                                        Ext_seed_rain=Ext_seed_rain,
                                        K=K,
                                        kernel=kernel,
                                        dynamics=dynamics,
                                        rng=rng)

        Abundances.append(np.sum(Community_matrix, (1, 2)))
        occupation.append(np.sum(np.sum(Community_matrix, 0) > 0) / n**2)

    Abundances = np.vstack(Abundances)
    total = np.sum(Abundances, 1)
    total[total == 0] = 1
    density = Abundances / total[:, np.newaxis]
    return list((Community_matrix, np.array(occupation), density, Abundances))

def par_simul(seed, Community_matrix, sim_kwargs):
    """Parallelisable single stochastic run."""
    Results = Simulation_model(Community_matrix=Community_matrix, dynamics='stochastic',
                               rng=np.random.default_rng(seed), **sim_kwargs)
    return Results[0]

def replicate_runs(n_rep, Community_matrix, sim_kwargs, seed=None, n_jobs=1):
    """
    Repeat the stochastic dynamics from the same initial community.

    Parameters:
    n_rep (int): Number of runs.
    Community_matrix (numpy.ndarray): Shared initial community.
    sim_kwargs (dict): Remaining arguments of Simulation_model (without dynamics and rng).
    seed (int): Seed of the runs.
    n_jobs (int): Number of jobs for joblib.

    Returns:
    tuple: (mean snapshot, (n_rep, S, n, n) array of the final communities)
    """
    if n_rep < 1:
        raise ValueError("n_rep must be at least 1")
    seeds = np.random.SeedSequence(seed).spawn(n_rep)
    runs = Parallel(n_jobs=n_jobs)(delayed(par_simul)(s, Community_matrix, sim_kwargs)
                                   for s in tqdm(seeds, desc='stochastic runs', disable=n_rep < 2))
    runs = np.stack(runs)
    return np.mean(runs, 0), runs

# =============================================================================
# III. Sampling and community analysis function
# =============================================================================

def sample_community(snapshot, family='poisson', size=None, n_sites=None, rng=None):
    """
    Observe a community snapshot with sampling noise.

    Parameters:
    snapshot (numpy.ndarray): (S, n, n) mean abundances.
    family (str): 'poisson' or 'negbin'.
    size (float): Size (aggregation) parameter of the negative binomial.
    n_sites (int): Number of randomly chosen sites observed, None for all.
    rng (numpy.random.Generator): Random generator.

    Returns:
    numpy.ndarray: (n_site_observed, S) counts, and the index of the observed sites.
    """
    rng = np.random.default_rng(rng)
    S = snapshot.shape[0]
    mean = np.asarray(snapshot, dtype=np.float64).reshape(S, -1).T
    site_id = np.arange(mean.shape[0])
    if n_sites is not None:
        if not 0 < n_sites <= mean.shape[0]:
            raise ValueError("n_sites must be in [1, %d]" % mean.shape[0])
        site_id = np.sort(rng.choice(site_id, n_sites, replace=False))
        mean = mean[site_id, :]
    if family == 'poisson':
        counts = rng.poisson(mean)
    elif family == 'negbin':
        if size is None or size <= 0:
            raise ValueError("The negative binomial needs a positive size")
        counts = rng.negative_binomial(size, size / (size + mean))
    else:
        raise ValueError("family must be one of %s, got %s" % (FAMILIES, family))
    return counts, site_id

def community_to_dataframe(counts, site_id, sites, species):
    """
    Long table of an observed community, one row per site and species.

    Parameters:
    counts (numpy.ndarray): (n_site_observed, S) counts.
    site_id (numpy.ndarray): Index of the observed sites.
    sites (pandas.DataFrame): Sites of the landscape.
    species (pandas.DataFrame): Species pool.

    Returns:
    pandas.DataFrame: Long table with the abundance and the mismatch covariates.
    """
    S = counts.shape[1]
    dtf = pd.DataFrame({'site': np.repeat(site_id, S),
                        'species': np.tile(np.arange(S), len(site_id)),
                        'abundance': counts.ravel()})
    dtf = dtf.merge(sites, on='site', how='left').merge(species, on='species', how='left')
    for t in ['true', 'wrong']:
        mismatch = (dtf['env'] - dtf['trait_' + t])**2
        dtf['mismatch_' + t] = scale(mismatch.to_numpy()) if np.std(mismatch) > 0 else 0.0
    dtf['species'] = dtf['species'].astype(str)
    dtf['site'] = dtf['site'].astype(str)
    dtf['region'] = dtf['region'].astype(str)
    return dtf

def shannon_div(rel_ab):
    """
    Compute the Shannon diversity index (Hill number of order 1).

    Parameters:
    rel_ab (numpy.ndarray): Relative abundances of species, one row per sample.

    Returns:
    numpy.ndarray: Shannon diversity of each row.
    """
    rel_ab = np.atleast_2d(rel_ab)
    with np.errstate(divide='ignore', invalid='ignore'):
        log_rel = np.log(rel_ab)
        log_rel[np.isinf(log_rel)] = 0
        Shannon_idx = np.exp(-np.sum(rel_ab * log_rel, axis=1))
    return Shannon_idx
