"""Default parameters of the niche vs neutral experiment."""

## Species parameters
SPECIES_PARAMS = {
    'S': 20,                # Number of species
    'wrong_correl': 0.1,    # Correlation between the true trait and its surrogate
}

## Landscape parameters
LANDSCAPE_PARAMS = {
    'n': 10,                     # Size of the landscape grid
    'structure': 'gradient_linear',  # homogeneous, random, gradient, gradient_linear or mosaic
    'env_range': [0, 1],         # Range of the environmental values
    'n_moda': 10,                # Number of levels of the abrupt gradient
    'auto_corr': 5,              # Autocorrelation range of the mosaic
    'n_regions_side': 2,         # The grid is cut into n_regions_side**2 regions
}

## Simulation processes parameters
SIMULATION_PARAMS = {
    'max_tick': 200,        # Number of time steps
    'K': 20,                # Carrying capacity of the cells
    'mu': 0.2,              # Mortality rate
    'Fecundity': 0.5,       # Number of seed produced per individual
    'Ext_seed_rain': 0.1,   # External migration rate
    'omega': 0.15,          # Environmental niche breadth of the species
    'sigma_c': 0.1,         # Competition breadth
    'We': 1,                # Strength of the environmental filtering
    'Wc': 0,                # Strength of the competition
    'disp_dist': 1.0,       # Mean dispersal distance (None for global dispersal)
    'n_rep': 10,            # Number of stochastic runs averaged
}

## Sampling parameters
SAMPLING_PARAMS = {
    'family': 'poisson',    # poisson or negbin
    'size': 2.0,            # Size of the negative binomial
    'n_sites': None,        # Number of sites sampled, None for all
}

## Model fitting parameters
FITTING_PARAMS = {
    'families': ['poisson'],     # Families of the fitted GLMMs
    'hypotheses': ['true', 'wrong'],
}

## Outputs
OUTPUT = {
    'dir': 'results',
    'name': 'Niche_neutral_experiment',
    'figures': True,
}

N_JOBS = 1
SEED = 25

LOG_FORMAT = '%(asctime)s %(name)s %(levelname)s: %(message)s'
LOG_LEVEL = 'INFO'
