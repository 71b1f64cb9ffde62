# -*- coding: utf-8 -*-
"""
Created on October 2026

Sensitivity of the niche / neutral variance partition to the simulation and
sampling parameters, over a latin hypercube.
"""
# Import python modules
import logging
import os
import pickle
import time

import numpy as np
import pandas as pd
import scipy
import scipy.stats
from joblib import Parallel, delayed

import config
import glmm_function as glmm
import niche_neutral_experiment as experiment

LOGGER = logging.getLogger(__name__)

#%% =============================================================================
# I. Build the latin hypercube for the sensitivity analysis
# ===============================================================================

## Params to test, with their reference values
PARAMS_VALUES = {'mu': config.SIMULATION_PARAMS['mu'],                # Mortality rate
                 'Fecundity': config.SIMULATION_PARAMS['Fecundity'],  # Number of seed produced per individual
                 'omega': config.SIMULATION_PARAMS['omega'],          # Environmental niche breadth of the species
                 'disp_dist': config.SIMULATION_PARAMS['disp_dist'],  # Mean dispersal distance
                 'size': config.SAMPLING_PARAMS['size']}              # Size of the negative binomial sampling


def latin_hypercube(n_test, params_values=PARAMS_VALUES, spread=0.8, seed=None):
    """
    Latin hypercube around the reference values.

    Parameters:
    n_test (int): Number of parameter combinations.
    params_values (dict): Reference value of each parameter.
    spread (float): The bounds are the reference values -/+ spread.
    seed (int or numpy.random.Generator): Seed of the sampler.

    Returns:
    pandas.DataFrame: One row per combination.
    """
    values = np.array(list(params_values.values()), dtype=np.float64)
    sampler = scipy.stats.qmc.LatinHypercube(d=len(values), seed=seed)
    sample = sampler.random(n=n_test)
    l_bounds = values * (1 - spread)  # Lower bounds of the parameters values
    u_bounds = values * (1 + spread)  # Upper bounds of the parameters values
    LHC = scipy.stats.qmc.scale(sample, l_bounds, u_bounds)
    return pd.DataFrame(LHC, columns=list(params_values))

#%% ===========================================================================
# II. Definition of the parallel simulation function
# =============================================================================

def par_sensi(i, LHC, species_params, landscape_params, simulation_params, sampling_params, seed):
    """
    Run the stochastic scenario of one parameter combination and partition
    the variance of its full model.

    Returns:
    dict: Parameters, lowest BIC model and R2 partition of the niche_neutral model.
    """
    draw = LHC.iloc[i].to_dict()
    sim = {**simulation_params,
           'mu': draw['mu'], 'Fecundity': draw['Fecundity'],
           'omega': draw['omega'], 'disp_dist': draw['disp_dist']}
    sampling = {**sampling_params, 'family': 'negbin', 'size': draw['size']}
    scenario = experiment.run_scenario('stochastic', species_params, landscape_params, sim,
                                       sampling, seed=seed)
    fits = glmm.fit_model_set(scenario['data'], 'true', 'negbin')
    bic_df = glmm.bic_table(fits)
    full = [f for f in fits if f['model'] == 'niche_neutral'][0]
    r2 = glmm.r2_glmm(full)
    return {**draw,
            'best_model': bic_df.loc[bic_df['rank'] == 1, 'model'].iloc[0],
            'r2_marginal': r2['r2_marginal'],
            'r2_conditional': r2['r2_conditional'],
            'share_niche': r2['share_fixed'],
            'share_neutral': r2['share_species:region']}

#%% =============================================================================
# III. Run the sensitivity analysis in parallel
# ===============================================================================

def run_sensitivity(n_test, species_params=None, landscape_params=None, simulation_params=None,
                    sampling_params=None, seed=config.SEED, n_jobs=config.N_JOBS):
    """
    Run the whole latin hypercube.

    The sampling family is always 'negbin' and its size is drawn in the
    hypercube, the other sampling settings come from sampling_params.

    Returns:
    pandas.DataFrame: One row per parameter combination.
    """
    species_params = species_params or config.SPECIES_PARAMS
    landscape_params = landscape_params or config.LANDSCAPE_PARAMS
    simulation_params = simulation_params or config.SIMULATION_PARAMS
    sampling_params = sampling_params or config.SAMPLING_PARAMS
    seed_seq = np.random.SeedSequence(seed)
    LHC = latin_hypercube(n_test, seed=np.random.default_rng(seed_seq))
    seeds = seed_seq.spawn(len(LHC))
    start_time = time.time()
    out = Parallel(n_jobs=n_jobs)(delayed(par_sensi)(i, LHC, species_params, landscape_params,
                                                     simulation_params, sampling_params, seeds[i])
                                  for i in range(len(LHC)))
    LOGGER.info("Sensitivity analysis %.2f minutes ---", (time.time() - start_time) / 60)
    return pd.DataFrame(out)


def main(n_test=50, output=None):
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    output = output or config.OUTPUT
    sensi_dtf = run_sensitivity(n_test)
    os.makedirs(output['dir'], exist_ok=True)
    file_name = os.path.join(output['dir'], 'Sensi_analysis_' + output['name'] + '.pkl')
    with open(file_name, 'wb') as open_file:
        pickle.dump(sensi_dtf, open_file)
    LOGGER.info("Lowest BIC model counts:\n%s", sensi_dtf['best_model'].value_counts().to_string())
    return sensi_dtf


if __name__ == "__main__":
    main()
