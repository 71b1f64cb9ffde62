# -*- coding: utf-8 -*-
"""
Created on October 2026

Generalized linear mixed models (log link, Poisson or negative binomial) fitted
by Laplace approximation, BIC ranking of competing models and R2 decomposition
(Nakagawa & Schielzeth 2013, Nakagawa et al. 2017).
"""
# Import python modules
import logging
import warnings

import numpy as np
import pandas as pd
import scipy
import scipy.linalg
import scipy.optimize
import scipy.stats
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

LOGGER = logging.getLogger(__name__)

FAMILIES = ('poisson', 'negbin')
HYPOTHESES = ('true', 'wrong')

# Bounds of the log standard deviations and of the log size of the negative binomial
LOG_SD_BOUNDS = (-8.0, 4.0)
LOG_SIZE_BOUNDS = (-5.0, 10.0)
ETA_MAX = 50.0

#%%
# =============================================================================
# I. Model specifications and design matrices
# =============================================================================

def model_set(trait):
    """
    Competing models for one hypothesis on the trait driving the niche term.

    Species and site random intercepts are common to all models; the niche
    term is the (scaled) squared mismatch between the environment and the
    trait, the neutral term is a species by region random intercept
    (spatial aggregation generated by dispersal limitation).

    Parameters:
    trait (str): 'true' or 'wrong'.

    Returns:
    list: Model specifications, dicts with 'name', 'fixed' and 'random'.
    """
    if trait not in HYPOTHESES:
        raise ValueError("trait must be one of %s, got %s" % (HYPOTHESES, trait))
    niche = ['mismatch_' + trait]
    base = ['species', 'site']
    neutral = ['species:region']
    return [{'name': 'null', 'fixed': [], 'random': base},
            {'name': 'niche', 'fixed': niche, 'random': base},
            {'name': 'neutral', 'fixed': [], 'random': base + neutral},
            {'name': 'niche_neutral', 'fixed': niche, 'random': base + neutral}]

def random_factor(data, term):
    """Grouping factor of a random term, 'a:b' being the interaction of the columns a and b."""
    cols = term.split(':')
    missing = [c for c in cols if c not in data.columns]
    if missing:
        raise ValueError("Unknown grouping column(s) %s in random term %s" % (missing, term))
    if len(cols) == 1:
        return data[cols[0]].astype(str)
    return data[cols].astype(str).agg(':'.join, axis=1)

def design_matrices(data, spec):
    """
    Build the fixed effect design and the random effect indicator blocks.

    Parameters:
    data (pandas.DataFrame): Long table.
    spec (dict): Model specification.

    Returns:
    tuple: (X, fixed names, list of (term, Z, levels))
    """
    n_obs = len(data)
    X = np.ones((n_obs, 1))
    names = ['Intercept']
    for f in spec['fixed']:
        X = np.column_stack((X, data[f].to_numpy(dtype=np.float64)))
        names.append(f)
    Z_blocks = []
    for term in spec['random']:
        codes, levels = pd.factorize(random_factor(data, term), sort=True)
        Z = np.zeros((n_obs, len(levels)))
        Z[np.arange(n_obs), codes] = 1
        Z_blocks.append((term, Z, np.asarray(levels)))
    return X, names, Z_blocks

# =============================================================================
# II. Families (log link)
# =============================================================================

def loglik(y, mu, family, size=None):
    """Log-likelihood of the counts y given their means."""
    if family == 'poisson':
        return np.sum(scipy.stats.poisson.logpmf(y, mu))
    return np.sum(scipy.stats.nbinom.logpmf(y, size, size / (size + mu)))

def irls_weights(mu, family, size=None):
    """Working weights of the log link."""
    if family == 'poisson':
        return mu
    return mu / (1 + mu / size)

def score(y, mu, family, size=None):
    """Derivative of the log-likelihood with respect to the linear predictor."""
    if family == 'poisson':
        return y - mu
    return (y - mu) / (1 + mu / size)

# =============================================================================
# III. Laplace approximation
# =============================================================================

def pirls(y, M, n_fixed, penalty, family, size=None, start=None, tol=1e-10, max_iter=200):
    """
    Penalized iteratively reweighted least squares.

    Conditional modes of the fixed and random effects for given variance
    parameters, the random effects being penalized by their precision.

    Parameters:
    y (numpy.ndarray): Counts.
    M (numpy.ndarray): Full design matrix [X Z].
    n_fixed (int): Number of fixed effect columns (first columns of M).
    penalty (numpy.ndarray): Precision of each random effect.
    family (str): 'poisson' or 'negbin'.
    size (float): Size of the negative binomial.
    start (numpy.ndarray): Starting coefficients.
    tol (float): Relative tolerance on the penalized log-likelihood.
    max_iter (int): Maximum number of iterations.

    Returns:
    tuple: (coefficients, fitted means, penalized log-likelihood, converged)
    """
    P = np.concatenate((np.zeros(n_fixed), penalty))
    u = np.zeros(M.shape[1]) if start is None else np.array(start, dtype=np.float64)

    def objective(u):
        mu = np.exp(np.clip(M @ u, -ETA_MAX, ETA_MAX))
        return loglik(y, mu, family, size) - 0.5 * np.sum(P * u**2), mu

    obj, mu = objective(u)
    converged = False
    for _ in range(max_iter):
        w = irls_weights(mu, family, size)
        g = M.T @ score(y, mu, family, size) - P * u
        H = (M.T * w) @ M + np.diag(P)
        step = scipy.linalg.solve(H, g, assume_a='sym')
        # Step halving
        t = 1.0
        while True:
            new_u = u + t * step
            new_obj, new_mu = objective(new_u)
            if new_obj >= obj or t < 1e-10:
                break
            t = t / 2
        converged = abs(new_obj - obj) <= tol * (abs(obj) + tol)
        u, obj, mu = new_u, new_obj, new_mu
        if converged:
            break
    return u, mu, obj, converged

def laplace_loglik(params, y, M, n_fixed, block_sizes, family, start=None):
    """
    Laplace approximation of the marginal log-likelihood.

    Parameters:
    params (numpy.ndarray): Log standard deviation of each random term, then the log size for 'negbin'.
    y (numpy.ndarray): Counts.
    M (numpy.ndarray): Full design matrix [X Z].
    n_fixed (int): Number of fixed effect columns.
    block_sizes (list): Number of levels of each random term.
    family (str): 'poisson' or 'negbin'.
    start (numpy.ndarray): Starting coefficients for PIRLS.

    Returns:
    tuple: (log-likelihood, coefficients, PIRLS converged)
    """
    m = len(block_sizes)
    sigma2 = np.exp(2 * np.asarray(params[:m]))
    size = np.exp(params[m]) if family == 'negbin' else None
    var = np.repeat(sigma2, block_sizes)
    u, mu, pen_obj, converged = pirls(y, M, n_fixed, 1 / var, family, size, start)
    # log|I + L Z'WZ L| with L = diag(sd), stable for small variances
    w = irls_weights(mu, family, size)
    Z = M[:, n_fixed:]
    sd = np.sqrt(var)
    A = np.eye(len(var)) + sd[:, np.newaxis] * ((Z.T * w) @ Z) * sd[np.newaxis, :]
    sign, logdet = np.linalg.slogdet(A)
    if sign <= 0:
        return -np.inf, u, False
    return pen_obj - 0.5 * logdet, u, converged

# =============================================================================
# IV. Model fitting
# =============================================================================

def fit_glm(y, X, names, family):
    """Fit of a model without random effect with statsmodels."""
    if family == 'poisson':
        res = sm.GLM(y, X, family=sm.families.Poisson()).fit()
        beta = np.asarray(res.params)
        size = None
        converged = bool(res.converged)
    else:
        res = sm.NegativeBinomial(y, X, loglike_method='nb2').fit(disp=0, maxiter=500)
        params = np.asarray(res.params)
        beta = params[:-1]
        size = 1 / params[-1]
        converged = bool(res.mle_retvals['converged'])
    return {'beta': pd.Series(beta, index=names), 'llf': float(res.llf), 'size': size,
            'converged': converged}

def fit_glmm(data, spec, family='poisson', response='abundance'):
    """
    Fit a GLMM by Laplace approximation.

    The log standard deviations of the random terms (and the log size of the
    negative binomial) are optimised with Nelder-Mead, the fixed and random
    effects being the PIRLS conditional modes. Models without random term
    are fitted by statsmodels.

    Parameters:
    data (pandas.DataFrame): Long table.
    spec (dict): Model specification.
    family (str): 'poisson' or 'negbin'.
    response (str): Column of the counts.

    Returns:
    dict: Fit with the coefficients, variances, log-likelihood and BIC.
    """
    if family not in FAMILIES:
        raise ValueError("family must be one of %s, got %s" % (FAMILIES, family))
    y = data[response].to_numpy(dtype=np.float64)
    X, names, Z_blocks = design_matrices(data, spec)
    n_fixed = X.shape[1]
    m = len(Z_blocks)

    # Fixed effects only fit, starting point of the mixed model
    glm = fit_glm(y, X, names, family)
    if m == 0:
        fit = dict(glm, sigma2={}, random_effects={})
        n_par = n_fixed + (family == 'negbin')
        return finalize_fit(fit, spec, family, X, y, n_par)

    M = np.hstack([X] + [Z for _, Z, _ in Z_blocks])
    block_sizes = [Z.shape[1] for _, Z, _ in Z_blocks]
    start = np.concatenate((glm['beta'].to_numpy(), np.zeros(sum(block_sizes))))
    x0 = np.full(m, np.log(0.5))
    bounds = [LOG_SD_BOUNDS] * m
    if family == 'negbin':
        size0 = glm['size'] if glm['size'] is not None and np.isfinite(glm['size']) else 1.0
        x0 = np.append(x0, np.clip(np.log(size0), *LOG_SIZE_BOUNDS))
        bounds.append(LOG_SIZE_BOUNDS)

    state = {'start': start}

    def objective(params):
        ll, u, _ = laplace_loglik(params, y, M, n_fixed, block_sizes, family, state['start'])
        if not np.isfinite(ll):
            return np.inf
        state['start'] = u
        return -ll

    res = scipy.optimize.minimize(objective, x0, method='Nelder-Mead', bounds=bounds,
                                  options={'xatol': 1e-4, 'fatol': 1e-6, 'maxiter': 400 * len(x0)})
    llf, u, pirls_conv = laplace_loglik(res.x, y, M, n_fixed, block_sizes, family, state['start'])

    sd = np.exp(res.x[:m])
    sigma2 = dict()
    random_effects = dict()
    pos = n_fixed
    for (term, Z, levels), s in zip(Z_blocks, sd):
        sigma2[term] = float(s**2)
        random_effects[term] = pd.Series(u[pos:pos + Z.shape[1]], index=levels)
        pos += Z.shape[1]
    fit = {'beta': pd.Series(u[:n_fixed], index=names),
           'llf': float(llf),
           'size': float(np.exp(res.x[m])) if family == 'negbin' else None,
           'converged': bool(res.success and pirls_conv),
           'sigma2': sigma2,
           'random_effects': random_effects}
    n_par = n_fixed + m + (family == 'negbin')
    return finalize_fit(fit, spec, family, X, y, n_par)

def finalize_fit(fit, spec, family, X, y, n_par):
    """Add the information criteria and the fixed effect summaries to a fit."""
    eta_fixed = X @ fit['beta'].to_numpy()
    fit.update({'model': spec['name'],
                'fixed': list(spec['fixed']),
                'random': list(spec['random']),
                'family': family,
                'nobs': len(y),
                'df': int(n_par),
                'mean_fixed': float(np.mean(eta_fixed)),
                'var_fixed': float(np.var(eta_fixed))})
    fit['bic'] = -2 * fit['llf'] + n_par * np.log(len(y))
    fit['aic'] = -2 * fit['llf'] + 2 * n_par
    if not fit['converged']:
        warnings.warn("Model %s (%s) did not converge" % (spec['name'], family), ConvergenceWarning)
    LOGGER.debug("%s (%s): logLik=%.2f BIC=%.2f", spec['name'], family, fit['llf'], fit['bic'])
    return fit

def fit_model_set(data, trait, family='poisson', response='abundance'):
    """
    Fit all the competing models of one hypothesis.

    Returns:
    list: Fits, tagged with the hypothesis.
    """
    fits = list()
    for spec in model_set(trait):
        fit = fit_glmm(data, spec, family, response)
        fit['hypothesis'] = trait
        fits.append(fit)
    return fits

# =============================================================================
# V. Model selection and variance decomposition
# =============================================================================

def bic_table(fits):
    """
    Rank the fits by BIC within each hypothesis.

    Parameters:
    fits (list): Fits from fit_glmm / fit_model_set.

    Returns:
    pandas.DataFrame: One row per fit with BIC, delta BIC, rank and BIC weight.
    """
    dtf = pd.DataFrame({'hypothesis': [f.get('hypothesis', '') for f in fits],
                        'model': [f['model'] for f in fits],
                        'family': [f['family'] for f in fits],
                        'df': [f['df'] for f in fits],
                        'logLik': [f['llf'] for f in fits],
                        'bic': [f['bic'] for f in fits],
                        'converged': [f['converged'] for f in fits]})
    grouped = dtf.groupby('hypothesis')['bic']
    dtf['delta_bic'] = dtf['bic'] - grouped.transform('min')
    dtf['weight'] = np.exp(-dtf['delta_bic'] / 2)
    dtf['weight'] = dtf['weight'] / dtf.groupby('hypothesis')['weight'].transform('sum')
    dtf['rank'] = dtf.groupby('hypothesis')['bic'].rank(method='first').astype(int)
    return dtf.sort_values(['hypothesis', 'rank']).reset_index(drop=True)

def distribution_variance(fit):
    """
    Distribution-specific variance on the latent (log) scale, lognormal approximation.

    Poisson: log(1 + 1/lambda), negative binomial: log(1 + 1/lambda + 1/size),
    with lambda = exp(mean fixed predictor + sum of the random variances / 2).
    """
    lam = np.exp(fit['mean_fixed'] + 0.5 * sum(fit['sigma2'].values()))
    if fit['family'] == 'poisson':
        return float(np.log1p(1 / lam))
    return float(np.log1p(1 / lam + 1 / fit['size']))

def r2_glmm(fit):
    """
    Marginal and conditional R2 of a GLMM and the share of each variance component.

    Parameters:
    fit (dict): Fit from fit_glmm.

    Returns:
    dict: 'r2_marginal', 'r2_conditional', and 'share_<component>' entries.
    """
    var_f = fit['var_fixed']
    var_r = sum(fit['sigma2'].values())
    var_d = distribution_variance(fit)
    total = var_f + var_r + var_d
    out = {'r2_marginal': var_f / total,
           'r2_conditional': (var_f + var_r) / total,
           'var_fixed': var_f,
           'var_random': var_r,
           'var_distribution': var_d,
           'share_fixed': var_f / total,
           'share_distribution': var_d / total}
    for term, s2 in fit['sigma2'].items():
        out['share_' + term] = s2 / total
    return out

def r2_table(fits):
    """R2 decomposition of every fit, one row per fit."""
    rows = list()
    for f in fits:
        row = {'hypothesis': f.get('hypothesis', ''), 'model': f['model'], 'family': f['family']}
        row.update(r2_glmm(f))
        rows.append(row)
    return pd.DataFrame(rows)
