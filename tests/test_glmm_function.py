import numpy as np
import pytest
import scipy.optimize
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

import glmm_function as glmm


# =============================================================================
# Specifications and design matrices
# =============================================================================

def test_model_set():
    specs = glmm.model_set('true')
    assert [s['name'] for s in specs] == ['null', 'niche', 'neutral', 'niche_neutral']
    assert specs[1]['fixed'] == ['mismatch_true']
    assert 'species:region' in specs[3]['random']
    assert glmm.model_set('wrong')[3]['fixed'] == ['mismatch_wrong']
    with pytest.raises(ValueError):
        glmm.model_set('both')


def test_design_matrices(glmm_data):
    spec = glmm.model_set('true')[3]
    X, names, Z_blocks = glmm.design_matrices(glmm_data, spec)
    assert X.shape == (len(glmm_data), 2)
    assert names == ['Intercept', 'mismatch_true']
    assert [term for term, _, _ in Z_blocks] == ['species', 'site', 'species:region']
    sizes = [Z.shape[1] for _, Z, _ in Z_blocks]
    assert sizes == [8, 40, 32]
    for _, Z, _ in Z_blocks:
        assert np.all(Z.sum(1) == 1)


def test_random_factor_rejects_unknown_column(glmm_data):
    with pytest.raises(ValueError):
        glmm.random_factor(glmm_data, 'species:plot')

# =============================================================================
# Fitting
# =============================================================================

def test_fit_without_random_effect_matches_statsmodels(glmm_data):
    spec = {'name': 'glm', 'fixed': ['mismatch_true'], 'random': []}
    fit = glmm.fit_glmm(glmm_data, spec, 'poisson')
    ref = sm.GLM(glmm_data['abundance'], sm.add_constant(glmm_data[['mismatch_true']]),
                 family=sm.families.Poisson()).fit()
    assert fit['llf'] == pytest.approx(ref.llf)
    assert np.allclose(fit['beta'].to_numpy(), ref.params.to_numpy())
    assert fit['df'] == 2
    assert fit['bic'] == pytest.approx(-2 * ref.llf + 2 * np.log(len(glmm_data)))
    assert fit['sigma2'] == {}


def test_laplace_matches_glm_with_vanishing_variances(glmm_data):
    spec = glmm.model_set('true')[1]
    X, names, Z_blocks = glmm.design_matrices(glmm_data, spec)
    y = glmm_data['abundance'].to_numpy(dtype=float)
    M = np.hstack([X] + [Z for _, Z, _ in Z_blocks])
    block_sizes = [Z.shape[1] for _, Z, _ in Z_blocks]
    glm = glmm.fit_glm(y, X, names, 'poisson')
    start = np.concatenate((glm['beta'].to_numpy(), np.zeros(sum(block_sizes))))
    ll, u, converged = glmm.laplace_loglik(np.full(2, -8.0), y, M, X.shape[1], block_sizes, 'poisson', start)
    assert converged
    assert ll == pytest.approx(glm['llf'], abs=0.05)
    assert np.allclose(u[:2], glm['beta'].to_numpy(), atol=1e-3)


def test_fit_glmm_recovers_niche_effect(glmm_data):
    fit = glmm.fit_glmm(glmm_data, glmm.model_set('true')[3], 'poisson')
    assert fit['converged']
    assert fit['beta']['mismatch_true'] == pytest.approx(-0.8, abs=0.3)
    assert set(fit['sigma2']) == {'species', 'site', 'species:region'}
    assert fit['sigma2']['species:region'] > 0.1
    assert fit['df'] == 5
    assert len(fit['random_effects']['species:region']) == 32
    assert fit['bic'] == pytest.approx(-2 * fit['llf'] + 5 * np.log(len(glmm_data)))


def test_fit_glmm_negative_binomial(make_glmm_data, rng):
    data = make_glmm_data(rng, family='negbin', size=2.0)
    fit = glmm.fit_glmm(data, glmm.model_set('true')[1], 'negbin')
    assert fit['family'] == 'negbin'
    assert np.isfinite(fit['size']) and fit['size'] > 0
    assert fit['df'] == 5
    assert np.isfinite(fit['llf'])


def test_fit_glmm_rejects_unknown_family(glmm_data):
    with pytest.raises(ValueError):
        glmm.fit_glmm(glmm_data, glmm.model_set('true')[0], 'binomial')


def test_bic_selects_niche_neutral_model(glmm_data):
    fits = glmm.fit_model_set(glmm_data, 'true', 'poisson')
    table = glmm.bic_table(fits)
    assert table.loc[table['rank'] == 1, 'model'].iloc[0] == 'niche_neutral'
    assert set(table['hypothesis']) == {'true'}


def test_unconverged_fit_warns_and_is_flagged(glmm_data, monkeypatch):
    minimize = scipy.optimize.minimize

    def one_iteration(fun, x0, **kwargs):
        kwargs['options'] = dict(kwargs.get('options', {}), maxiter=1)
        return minimize(fun, x0, **kwargs)

    monkeypatch.setattr(scipy.optimize, 'minimize', one_iteration)
    spec = glmm.model_set('true')[3]
    with pytest.warns(ConvergenceWarning, match='niche_neutral'):
        fit = glmm.fit_glmm(glmm_data, spec, 'poisson')
    assert fit['converged'] is False
    assert np.isfinite(fit['bic'])
    fit['hypothesis'] = 'true'
    table = glmm.bic_table([fit])
    assert not table['converged'].iloc[0]

# =============================================================================
# Model selection and R2
# =============================================================================

def fake_fit(model, bic, hypothesis='true', family='poisson'):
    return {'model': model, 'bic': bic, 'hypothesis': hypothesis, 'family': family,
            'df': 3, 'llf': -bic / 2, 'converged': True}


def test_bic_table_ranks_within_hypothesis():
    fits = [fake_fit('null', 110), fake_fit('niche', 100), fake_fit('neutral', 104),
            fake_fit('null', 90, 'wrong'), fake_fit('niche', 95, 'wrong')]
    table = glmm.bic_table(fits)
    true = table[table['hypothesis'] == 'true']
    assert list(true['model']) == ['niche', 'neutral', 'null']
    assert list(true['delta_bic']) == [0, 4, 10]
    assert true['weight'].sum() == pytest.approx(1)
    assert true['weight'].iloc[0] == pytest.approx(1 / (1 + np.exp(-2) + np.exp(-5)))
    wrong = table[table['hypothesis'] == 'wrong']
    assert wrong.loc[wrong['rank'] == 1, 'model'].iloc[0] == 'null'


def test_distribution_variance():
    fit = {'mean_fixed': 0.0, 'sigma2': {}, 'family': 'poisson'}
    assert glmm.distribution_variance(fit) == pytest.approx(np.log(2))
    fit = {'mean_fixed': 0.0, 'sigma2': {}, 'family': 'negbin', 'size': 1.0}
    assert glmm.distribution_variance(fit) == pytest.approx(np.log(3))


def test_r2_glmm_partition():
    fit = {'var_fixed': 0.5, 'mean_fixed': 1.0, 'sigma2': {'species': 0.3, 'species:region': 0.2},
           'family': 'poisson'}
    r2 = glmm.r2_glmm(fit)
    assert 0 < r2['r2_marginal'] < r2['r2_conditional'] < 1
    shares = r2['share_fixed'] + r2['share_species'] + r2['share_species:region'] + r2['share_distribution']
    assert shares == pytest.approx(1)
    assert r2['r2_conditional'] - r2['r2_marginal'] == pytest.approx(r2['share_species'] + r2['share_species:region'])


def test_r2_table_null_model_has_no_marginal_r2(glmm_data):
    fits = [glmm.fit_glmm(glmm_data, spec, 'poisson') for spec in glmm.model_set('true')[:2]]
    table = glmm.r2_table(fits)
    assert list(table['model']) == ['null', 'niche']
    assert table.loc[0, 'r2_marginal'] == pytest.approx(0)
    assert table.loc[1, 'r2_marginal'] > 0
    assert np.all(table['r2_conditional'] >= table['r2_marginal'])
