"""
Phase 3: RISK AND TEMPORAL ANALYSIS
===================================
Residual-based identification of high-risk regions from the selected
model, and year-level summaries of the TB rate.

High-risk rule:
- threshold = 95th percentile of the selected model's residuals, all
  years pooled (numpy linear interpolation, as R's default quantile)
- high_risk = residual > threshold
With N distinct residuals exactly ceil(0.05 * (N - 1)) rows are flagged,
which is always floor(0.05 * N) or ceil(0.05 * N).
"""

from pathlib import Path
from typing import Tuple
import logging

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from tb_analysis.config import (
    DIVERGING_CMAP,
    HIGH_RISK_QUANTILE,
    MAP_N_LEVELS,
    RISK_MAP_YEAR,
)
from tb_analysis.utils import SelectedModel, plot_map, save_figure

logger = logging.getLogger("phase3_risk_analysis")


# =============================================================================
# HIGH-RISK REGIONS
# =============================================================================

def attach_model_outputs(df: pd.DataFrame, selected: SelectedModel) -> pd.DataFrame:
    """Copy of df with the selected model's fitted values and residuals."""
    out = df.copy()
    out['fitted'] = selected.fit['fitted'].reindex(out.index)
    out['residual'] = selected.fit['residuals'].reindex(out.index)
    return out


def high_risk_threshold(residuals: pd.Series, quantile: float = HIGH_RISK_QUANTILE) -> float:
    """Pooled residual quantile; rows without a residual are ignored."""
    valid = residuals.dropna().to_numpy(dtype=float)
    if valid.size == 0:
        raise ValueError("No residuals available to compute the high-risk threshold")
    return float(np.percentile(valid, quantile * 100))


def flag_high_risk(df: pd.DataFrame, selected: SelectedModel,
                   quantile: float = HIGH_RISK_QUANTILE) -> Tuple[pd.DataFrame, float]:
    """
    Attach fitted/residual columns and flag residuals above the threshold.

    Returns:
    --------
    (augmented copy of df with 'high_risk', threshold)
    """
    out = attach_model_outputs(df, selected)
    threshold = high_risk_threshold(out['residual'], quantile)
    out['high_risk'] = (out['residual'] > threshold).astype(bool)

    by_year = out.groupby('year')['high_risk'].sum()
    logger.info(f"High-risk threshold={threshold:.4f}; flagged per year: {by_year.to_dict()}")
    return out, threshold


def plot_risk_map(df: pd.DataFrame, maps_dir: Path, year: int = RISK_MAP_YEAR) -> None:
    """Map of selected-model residuals for one year, high-risk regions outlined."""
    print(f"\n[Risk] Residual map for {year}...")
    year_df = df[df['year'] == year].sort_values('region_id')
    if year_df.empty:
        logger.warning(f"No observations for year {year}; skipping risk map")
        return

    fig, _, _ = plot_map(year_df['residual'], year_df['longitude'], year_df['latitude'],
                         n_levels=MAP_N_LEVELS, cmap=DIVERGING_CMAP,
                         title=f"Model Residuals ({year}) - High Risk Regions",
                         highlight=year_df['high_risk'].to_numpy())
    save_figure(fig, Path(maps_dir) / f"map_residuals_{year}")


# =============================================================================
# TEMPORAL ANALYSIS
# =============================================================================

def temporal_summary(df: pd.DataFrame) -> pd.DataFrame:
    """
    Mean, median, standard deviation and region count of tb_rate per year.

    Missing rates are excluded per year; n_regions counts the rows that
    contribute to the statistics.
    """
    grouped = df.groupby('year')['tb_rate']
    summary = pd.DataFrame({
        'mean_rate': grouped.mean(),
        'median_rate': grouped.median(),
        'sd_rate': grouped.std(ddof=1),
        'n_regions': grouped.count(),
    }).reset_index()
    summary['n_regions'] = summary['n_regions'].astype(int)
    return summary


def plot_temporal_trend(summary: pd.DataFrame, figures_dir: Path) -> None:
    """Mean TB rate by year."""
    print("\n[Temporal] Trend in mean TB rate...")
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(summary['year'], summary['mean_rate'], marker='o', color='black')
    ax.set_xticks(summary['year'])
    ax.set_title('Temporal Trend in TB Rates')
    ax.set_xlabel('Year')
    ax.set_ylabel('Mean TB Rate')
    save_figure(fig, Path(figures_dir) / 'fig_temporal_trend')
