# -*- coding: utf-8 -*-
"""
Created on October 2026

Figures of the sensitivity analysis.
"""
# Import python modules
import os
import pickle

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

import config
import sensitivity_analysis as sensi


def custom_scatter(data, x, y, hue, ax):
    sns.scatterplot(data=data, x=x, y=y, hue=hue, ax=ax)
    ax.axvline(x=np.mean(data[x]), color='red', linestyle='dashed', linewidth=2)
    ax.set_xlabel(x, fontsize=15)
    ax.set_ylim(ymin=0, ymax=1)


def plot_sensitivity(sensi_dtf, params=None):
    """
    Niche and neutral shares of variance against each tested parameter.

    Parameters:
    sensi_dtf (pandas.DataFrame): Output of sensitivity_analysis.run_sensitivity.
    params (list): Parameters to plot, default all the tested ones.

    Returns:
    matplotlib.figure.Figure
    """
    params = params or list(sensi.PARAMS_VALUES)
    data = pd.melt(sensi_dtf, id_vars=params, value_vars=['share_niche', 'share_neutral'],
                   var_name='component', value_name='share')
    fig, axs = plt.subplots(1, len(params), figsize=(5 * len(params), 5), sharey=True, squeeze=False)
    for i, ax in enumerate(axs[0]):
        custom_scatter(data, params[i], 'share', 'component', ax)
        if i == 0:
            ax.set_ylabel('Share of variance', fontsize=15)
    plt.tight_layout()
    return fig


if __name__ == "__main__":
    file_name = os.path.join(config.OUTPUT['dir'], 'Sensi_analysis_' + config.OUTPUT['name'] + '.pkl')
    with open(file_name, 'rb') as open_file:
        sensi_dtf = pickle.load(open_file)
    fig = plot_sensitivity(sensi_dtf)
    fig.savefig(os.path.join(config.OUTPUT['dir'], 'Sensi_analysis.png'), format="png")
    plt.show()
