# -*- coding: utf-8 -*-
"""
Created on October 2026

Walk-through of a single simulation: landscape, species pool, dynamics and
the resulting community.
"""
# Import python modules
import logging
import time

import matplotlib.pyplot as plt
import numpy as np

import config
import metacommunity_function as model

LOGGER = logging.getLogger(__name__)


def single_run(dynamics='stochastic', species_params=None, landscape_params=None,
               simulation_params=None, seed=config.SEED):
    """
    Run one simulation.

    Returns:
    dict: Species pool, environment and the outputs of Simulation_model.
    """
    species_params = species_params or config.SPECIES_PARAMS
    landscape_params = landscape_params or config.LANDSCAPE_PARAMS
    simulation_params = simulation_params or config.SIMULATION_PARAMS
    rng = np.random.default_rng(seed)
    S = species_params['S']
    n = landscape_params['n']

    ### I.1. Generate the species pool and the environmental grid
    species = model.species_pool(S, species_params['wrong_correl'], rng)
    Environmental_trait = species['trait_true'].to_numpy()
    _, Environment_matrix = model.landscape(n, landscape_params['structure'], landscape_params['env_range'],
                                            landscape_params['n_moda'], landscape_params['auto_corr'],
                                            landscape_params['n_regions_side'], rng)

    ### I.2. Initialization
    Comm_matrix = model.init_commu(simulation_params['K'], S, n, rng)

    ### II. Simulation execution
    start_time = time.time()
    Results = model.Simulation_model(max_tick=simulation_params['max_tick'],
                                     Community_matrix=Comm_matrix,
                                     S=S,
                                     omega=simulation_params['omega'],
                                     Environmental_trait=Environmental_trait,
                                     Fecundity=simulation_params['Fecundity'],
                                     Ext_seed_rain=simulation_params['Ext_seed_rain'],
                                     mu=simulation_params['mu'],
                                     We=simulation_params['We'],
                                     Wc=simulation_params['Wc'],
                                     K=simulation_params['K'],
                                     Aij=model.interaction_matrix(Environmental_trait, simulation_params['sigma_c']),
                                     Environment_matrix=Environment_matrix,
                                     n=n,
                                     kernel=model.dispersal_kernel(n, simulation_params['disp_dist']),
                                     dynamics=dynamics,
                                     rng=rng)
    LOGGER.info("Simulation %.2f minutes ---", (time.time() - start_time) / 60)
    return {'species': species,
            'Environment_matrix': Environment_matrix,
            'Final_community': Results[0],
            'Space_occupation': Results[1],
            'Relative_abundance': Results[2],
            'ab_on_time': Results[3]}


def plot_run(run):
    """Rank abundance, relative abundances over time and abundance along the trait axis."""
    Final_community = run['Final_community']
    S = Final_community.shape[0]
    Abundance = np.sum(Final_community, (1, 2))
    Abundance_rank = np.sort(Abundance)[::-1]

    fig = plt.figure(figsize=(27, 10))
    plt.subplot(1, 3, 1)
    plt.bar(np.arange(S), Abundance_rank)
    plt.xlabel('Species', size=25)
    plt.ylabel('Abundances', size=25)
    plt.subplot(1, 3, 2)
    plt.plot(run['Relative_abundance'])
    plt.xlabel('Time steps', size=25)
    plt.ylabel('Relative abundance', size=25)
    plt.subplot(1, 3, 3)
    plt.bar(run['species']['trait_true'], Abundance, width=0.01)
    plt.xlabel('Environmental trait', size=25)
    return fig


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    run = single_run()
    ab = np.sum(run['Final_community'], (1, 2))
    LOGGER.info("Shannon diversity at global scale: %.2f", model.shannon_div(ab / np.sum(ab))[0])
    plot_run(run)
    plt.show()
