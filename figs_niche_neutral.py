# -*- coding: utf-8 -*-
"""
Created on October 2026

Figures of the niche vs neutral experiment.
"""
# Import python modules
import logging
import os

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

LOGGER = logging.getLogger(__name__)

COMPONENTS = ['share_fixed', 'share_species', 'share_site', 'share_species:region', 'share_distribution']
COMPONENT_LABELS = {'share_fixed': 'Niche (fixed)',
                    'share_species': 'Species',
                    'share_site': 'Site',
                    'share_species:region': 'Neutral (species x region)',
                    'share_distribution': 'Residual'}
MODEL_ORDER = ['null', 'niche', 'neutral', 'niche_neutral']


def plot_landscape(Environment_matrix, snapshot, species):
    """
    Environmental grid and abundance of the species along the environment.

    Parameters:
    Environment_matrix (numpy.ndarray): (n, n) environment.
    snapshot (numpy.ndarray): (S, n, n) abundances.
    species (pandas.DataFrame): Species pool.

    Returns:
    matplotlib.figure.Figure
    """
    f, (ax1, ax2) = plt.subplots(1, 2, gridspec_kw={'width_ratios': [1, 1]}, figsize=(12, 5))
    g1 = sns.heatmap(Environment_matrix, cmap="viridis", cbar=True, ax=ax1)
    g1.set_title('Environmental grid', fontsize=15)

    env = Environment_matrix.ravel()
    levels = np.unique(env)
    S = snapshot.shape[0]
    ab = snapshot.reshape(S, -1)
    order = np.argsort(species['trait_true'].to_numpy())
    palette = sns.color_palette('viridis', n_colors=S)
    for rank, sp in enumerate(order):
        mean_ab = [np.mean(ab[sp, env == e]) for e in levels]
        ax2.plot(levels, mean_ab, color=palette[rank])
    ax2.set_xlabel('Environment', fontsize=15)
    ax2.set_ylabel('Mean abundance', fontsize=15)
    ax2.set_title('Species ordered by trait optimum', fontsize=15)
    plt.tight_layout()
    return f


def plot_bic(bic_df):
    """
    Heatmap of the delta BIC of each model in each scenario.

    Parameters:
    bic_df (pandas.DataFrame): BIC table with a 'dynamics' column.

    Returns:
    matplotlib.figure.Figure
    """
    dtf = bic_df.copy()
    dtf['scenario'] = dtf['dynamics'] + ' / ' + dtf['hypothesis'] + ' trait / ' + dtf['family']
    h_map = dtf.pivot(index='model', columns='scenario', values='delta_bic')
    h_map = h_map.reindex([m for m in MODEL_ORDER if m in h_map.index])
    fig, ax = plt.subplots(figsize=(3 + 2 * h_map.shape[1], 5))
    sns.heatmap(h_map, ax=ax, annot=True, fmt='.1f', cmap='Greys', cbar_kws={'label': 'delta BIC'})
    ax.set_xlabel('')
    ax.set_ylabel('')
    ax.set_title('Model selection', fontsize=15)
    plt.tight_layout()
    return fig


def plot_r2(r2_df):
    """
    Stacked bars of the variance partition of each model.

    Parameters:
    r2_df (pandas.DataFrame): R2 table with a 'dynamics' column.

    Returns:
    matplotlib.figure.Figure
    """
    groups = list(r2_df.groupby(['dynamics', 'hypothesis', 'family'], sort=True))
    fig, axs = plt.subplots(1, len(groups), figsize=(6 * len(groups), 6), sharey=True, squeeze=False)
    palette = dict(zip(COMPONENTS, sns.color_palette('Greys', n_colors=len(COMPONENTS))))
    for ax, ((dyn, trait, family), data) in zip(axs[0], groups):
        data = data.set_index('model').reindex([m for m in MODEL_ORDER if m in set(data['model'])])
        bottom = np.zeros(len(data))
        for c in COMPONENTS:
            values = data[c].fillna(0).to_numpy() if c in data.columns else np.zeros(len(data))
            ax.bar(data.index, values, bottom=bottom, color=palette[c], edgecolor='black',
                   label=COMPONENT_LABELS[c])
            bottom = bottom + values
        ax.scatter(data.index, data['r2_marginal'], color='darkred', zorder=3, label='Marginal R2')
        ax.set_title('%s / %s trait / %s' % (dyn, trait, family), fontsize=15)
        ax.set_ylim(0, 1)
    axs[0][0].set_ylabel('Share of variance', fontsize=15)
    axs[0][-1].legend(loc='upper right')
    plt.tight_layout()
    return fig


def save_figures(out_dir, name, bic_df, r2_df, scenarios):
    """
    Draw and save all the figures of an experiment.

    Returns:
    list: Paths of the saved figures.
    """
    os.makedirs(out_dir, exist_ok=True)
    paths = list()
    for dyn, scenario in scenarios.items():
        fig = plot_landscape(scenario['Environment_matrix'], scenario['snapshot'], scenario['species'])
        paths.append(os.path.join(out_dir, 'fig_landscape_' + name + '_' + dyn + '.png'))
        fig.savefig(paths[-1], format="png")
        plt.close(fig)
    for label, plot_fun, table in [('BIC', plot_bic, bic_df), ('R2', plot_r2, r2_df)]:
        fig = plot_fun(table)
        paths.append(os.path.join(out_dir, 'fig_' + label + '_' + name + '.png'))
        fig.savefig(paths[-1], format="png")
        plt.close(fig)
    LOGGER.info("%d figures saved in %s", len(paths), out_dir)
    return paths
