"""
Phase 1: EXPLORATORY ANALYSIS
=============================
Descriptive maps, rate distributions and the correlation structure of the
socio-economic covariates.

Outputs (under <output>/figures and <output>/maps):
- map_tb_counts_<year>, map_tb_rates_<year>
- fig_rate_distribution, fig_rate_by_year
- fig_covariate_correlation
"""

from pathlib import Path
from typing import Dict, Sequence
import logging

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from tb_analysis.config import (
    COVARIATES,
    DIVERGING_CMAP,
    HIST_COLOR,
    MAP_N_LEVELS,
    MEAN_LINE_COLOR,
    REFERENCE_YEAR,
)
from tb_analysis.utils import plot_map, save_figure

logger = logging.getLogger("phase1_exploration")


# =============================================================================
# DESCRIPTIVE FIGURES
# =============================================================================

def plot_descriptive_maps(df: pd.DataFrame, maps_dir: Path,
                          year: int = REFERENCE_YEAR) -> Dict[str, Path]:
    """TB counts and TB rates by region for one year."""
    print(f"\n[Descriptive] TB count and rate maps for {year}...")
    year_df = df[df['year'] == year].sort_values('region_id')
    if year_df.empty:
        logger.warning(f"No observations for year {year}; skipping descriptive maps")
        return {}

    saved = {}
    for col, label in [('tb_cases', 'TB counts'), ('tb_rate', 'TB rates')]:
        fig, _, _ = plot_map(year_df[col], year_df['longitude'], year_df['latitude'],
                             n_levels=MAP_N_LEVELS, title=f"{label} for {year}")
        name = f"map_{col}_{year}"
        save_figure(fig, Path(maps_dir) / name)
        saved[name] = Path(maps_dir) / f"{name}.png"
    return saved


def plot_rate_distribution(df: pd.DataFrame, figures_dir: Path) -> None:
    """Histogram of TB rates with the mean marked."""
    print("\n[Descriptive] TB rate distribution...")
    rates = df['tb_rate'].replace([np.inf, -np.inf], np.nan).dropna()

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.hist(rates, bins=50, color=HIST_COLOR, edgecolor='white')
    ax.axvline(rates.mean(), color=MEAN_LINE_COLOR, linewidth=2, label=f"Mean = {rates.mean():.5f}")
    ax.set_title('Distribution of TB Rates')
    ax.set_xlabel('TB Rate')
    ax.set_ylabel('Frequency')
    ax.legend()
    save_figure(fig, Path(figures_dir) / 'fig_rate_distribution')


def plot_rate_by_year(df: pd.DataFrame, figures_dir: Path) -> None:
    """Boxplot of TB rates per year."""
    print("\n[Descriptive] TB rates by year...")
    years = sorted(df['year'].unique())
    groups = [df.loc[df['year'] == y, 'tb_rate'].replace([np.inf, -np.inf], np.nan).dropna()
              for y in years]

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.boxplot(groups)
    ax.set_xticks(range(1, len(years) + 1), [str(y) for y in years])
    ax.set_title('TB Rates by Year')
    ax.set_xlabel('Year')
    ax.set_ylabel('TB Rate')
    save_figure(fig, Path(figures_dir) / 'fig_rate_by_year')


# =============================================================================
# CORRELATION ANALYSIS
# =============================================================================

def compute_correlation_matrix(df: pd.DataFrame,
                               covariates: Sequence[str] = COVARIATES) -> pd.DataFrame:
    """
    Pairwise-complete Pearson correlation of the covariates.

    Each coefficient uses the rows where both variables are present.
    Zero-variance columns produce NaN coefficients (reported, not fixed).
    """
    corr = df[list(covariates)].astype(float).corr(method='pearson')

    constant = [c for c in covariates if df[c].nunique(dropna=True) < 2]
    if constant:
        logger.warning(f"Correlation undefined for zero-variance covariates: {constant}")

    return corr


def plot_correlation_heatmap(corr: pd.DataFrame, figures_dir: Path) -> None:
    """Annotated heatmap of a correlation matrix on a fixed [-1, 1] scale."""
    print("\n[Correlation] Heatmap of socio-economic covariates...")
    fig, ax = plt.subplots(figsize=(9, 7))
    sns.heatmap(corr, ax=ax, cmap=DIVERGING_CMAP, center=0, vmin=-1, vmax=1,
                annot=True, fmt='.2f', annot_kws={'size': 8, 'color': 'black'},
                square=True, linewidths=0.5, cbar_kws={'label': 'Correlation'})
    ax.set_title('Correlation Matrix of Socio-economic Variables', fontweight='bold')
    ax.set_xticklabels(ax.get_xticklabels(), rotation=45, ha='right')
    ax.set_yticklabels(ax.get_yticklabels(), rotation=0)
    save_figure(fig, Path(figures_dir) / 'fig_covariate_correlation')
