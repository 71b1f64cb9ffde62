# -*- coding: utf-8 -*-
"""
Created on October 2026

Niche vs neutral experiment: simulate a metacommunity under deterministic and
stochastic dynamics, sample it, and compare the GLMMs of each hypothesis by
BIC and R2 decomposition.
"""
# Import python modules
import logging
import os
import pickle
import time

import numpy as np
import pandas as pd

import config
import figs_niche_neutral as figs
import glmm_function as glmm
import metacommunity_function as model

LOGGER = logging.getLogger(__name__)

#%% ===========================================================================
# I. Simulation and sampling of one scenario
# =============================================================================

def run_scenario(dynamics, species_params, landscape_params, simulation_params,
                 sampling_params, seed=None, n_jobs=1):
    """
    Simulate and sample one community.

    The species pool, the landscape and the initial community only depend on
    the seed, so scenarios run with the same seed share them.

    Parameters:
    dynamics (str): 'deterministic' or 'stochastic'.
    species_params (dict): See config.SPECIES_PARAMS.
    landscape_params (dict): See config.LANDSCAPE_PARAMS.
    simulation_params (dict): See config.SIMULATION_PARAMS.
    sampling_params (dict): See config.SAMPLING_PARAMS.
    seed (int or numpy.random.SeedSequence): Seed of the scenario.
    n_jobs (int): Number of jobs for the stochastic runs.

    Returns:
    dict: Species pool, sites, environment, snapshot and sampled long table.
    """
    rng = np.random.default_rng(seed)
    S = species_params['S']
    n = landscape_params['n']

    ### I.1. Species pool and landscape
    species = model.species_pool(S, species_params['wrong_correl'], rng)
    sites, Environment_matrix = model.landscape(n,
                                                landscape_params['structure'],
                                                landscape_params['env_range'],
                                                landscape_params['n_moda'],
                                                landscape_params['auto_corr'],
                                                landscape_params['n_regions_side'],
                                                rng)
    Environmental_trait = species['trait_true'].to_numpy()
    Aij = model.interaction_matrix(Environmental_trait, simulation_params['sigma_c'])
    kernel = model.dispersal_kernel(n, simulation_params['disp_dist'])

    ### I.2. Initialization
    Comm_matrix = model.init_commu(simulation_params['K'], S, n, rng)

    ### I.3. Run the simulation
    sim_kwargs = dict(max_tick=simulation_params['max_tick'],
                      S=S,
                      omega=simulation_params['omega'],
                      Environmental_trait=Environmental_trait,
                      Fecundity=simulation_params['Fecundity'],
                      Ext_seed_rain=simulation_params['Ext_seed_rain'],
                      mu=simulation_params['mu'],
                      We=simulation_params['We'],
                      Wc=simulation_params['Wc'],
                      K=simulation_params['K'],
                      Aij=Aij,
                      Environment_matrix=Environment_matrix,
                      n=n,
                      kernel=kernel)
    run_seed = int(rng.integers(2**32))
    if dynamics == 'deterministic':
        snapshot = model.Simulation_model(Community_matrix=Comm_matrix, dynamics='deterministic',
                                          rng=run_seed, **sim_kwargs)[0]
    elif dynamics == 'stochastic':
        snapshot, _ = model.replicate_runs(simulation_params['n_rep'], Comm_matrix, sim_kwargs,
                                           seed=run_seed, n_jobs=n_jobs)
    else:
        raise ValueError("dynamics must be one of %s, got %s" % (model.DYNAMICS, dynamics))

    ### I.4. Sampling
    counts, site_id = model.sample_community(snapshot,
                                             family=sampling_params['family'],
                                             size=sampling_params['size'],
                                             n_sites=sampling_params['n_sites'],
                                             rng=rng)
    data = model.community_to_dataframe(counts, site_id, sites, species)
    LOGGER.info("%s community: %d individuals sampled, Shannon diversity %.2f",
                dynamics, data['abundance'].sum(),
                model.shannon_div(np.sum(snapshot, (1, 2)) / np.sum(snapshot))[0])

    return {'dynamics': dynamics,
            'species': species,
            'sites': sites,
            'Environment_matrix': Environment_matrix,
            'snapshot': snapshot,
            'data': data}

#%% ===========================================================================
# II. Model comparison
# =============================================================================

def analyse_sample(data, families=('poisson',), hypotheses=glmm.HYPOTHESES):
    """
    Fit the competing GLMMs of each hypothesis and family.

    Returns:
    tuple: (BIC table, R2 table, list of fits)
    """
    fits = list()
    for family in families:
        for trait in hypotheses:
            start_time = time.time()
            fits.extend(glmm.fit_model_set(data, trait, family))
            LOGGER.info("Models %s trait (%s) fitted in %.2f minutes ---",
                        trait, family, (time.time() - start_time) / 60)
    bic_df = pd.concat([glmm.bic_table([f for f in fits if f['family'] == fam]) for fam in families],
                       ignore_index=True)
    r2_df = glmm.r2_table(fits)
    return bic_df, r2_df, fits

def best_models(bic_df):
    """Lowest BIC model of each scenario, hypothesis and family."""
    return bic_df.loc[bic_df['rank'] == 1].reset_index(drop=True)

#%% ===========================================================================
# III. Run the experiment and export the results
# =============================================================================

def main(species_params=None, landscape_params=None, simulation_params=None,
         sampling_params=None, fitting_params=None, output=None,
         dynamics=model.DYNAMICS, seed=config.SEED, n_jobs=config.N_JOBS):
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    species_params = species_params or config.SPECIES_PARAMS
    landscape_params = landscape_params or config.LANDSCAPE_PARAMS
    simulation_params = simulation_params or config.SIMULATION_PARAMS
    sampling_params = sampling_params or config.SAMPLING_PARAMS
    fitting_params = fitting_params or config.FITTING_PARAMS
    output = output or config.OUTPUT

    scenarios = dict()
    bic_list = list()
    r2_list = list()
    for dyn in dynamics:
        start_time = time.time()
        scenario = run_scenario(dyn, species_params, landscape_params, simulation_params,
                                sampling_params, seed, n_jobs)
        LOGGER.info("Simulation %s %.2f minutes ---", dyn, (time.time() - start_time) / 60)

        bic_df, r2_df, fits = analyse_sample(scenario['data'],
                                             fitting_params['families'],
                                             fitting_params['hypotheses'])
        bic_df.insert(0, 'dynamics', dyn)
        r2_df.insert(0, 'dynamics', dyn)
        scenario['fits'] = fits
        scenarios[dyn] = scenario
        bic_list.append(bic_df)
        r2_list.append(r2_df)
        LOGGER.info("BIC ranking (%s dynamics):\n%s", dyn, bic_df.to_string(index=False))
        LOGGER.info("R2 decomposition (%s dynamics):\n%s", dyn,
                    r2_df[['hypothesis', 'model', 'family', 'r2_marginal', 'r2_conditional']].to_string(index=False))

    bic_df = pd.concat(bic_list, ignore_index=True)
    r2_df = pd.concat(r2_list, ignore_index=True)
    for _, row in best_models(bic_df).iterrows():
        LOGGER.info("%s dynamics, %s trait (%s): lowest BIC for the %s model",
                    row['dynamics'], row['hypothesis'], row['family'], row['model'])

    ## Export
    os.makedirs(output['dir'], exist_ok=True)
    name = output['name']
    bic_df.to_csv(os.path.join(output['dir'], 'BIC_' + name + '.csv'), index=False)
    r2_df.to_csv(os.path.join(output['dir'], 'R2_' + name + '.csv'), index=False)
    for dyn, scenario in scenarios.items():
        scenario['data'].to_csv(os.path.join(output['dir'], 'Sample_' + name + '_' + dyn + '.csv'), index=False)
    with open(os.path.join(output['dir'], 'Results_' + name + '.pkl'), 'wb') as open_file:
        pickle.dump(scenarios, open_file)

    if output.get('figures', True):
        figs.save_figures(output['dir'], name, bic_df, r2_df, scenarios)

    return {'bic': bic_df, 'r2': r2_df, 'scenarios': scenarios}


if __name__ == "__main__":
    main()
