"""
Phase 4: MODEL OUTPUTS, CONCLUSIONS AND RESULTS
===============================================
Diagnostic and smooth-effect figures for the fitted GAMs, the spatial
risk surface of the selected model, the written conclusions, and the
persisted results.

Outputs (under the output directory):
- figures/fig_diagnostics_model_<A|B|C>, figures/fig_smooth_effects_model_<X>
- maps/map_spatial_surface (only when the selected model is spatial)
- TB_analysis_results.joblib: the three fitted models + augmented table
- tb_gam_summary.json, tb_data_augmented.csv
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging

import joblib
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import statsmodels.api as sm

from tb_analysis.config import (
    AUGMENTED_TABLE_FILE,
    COVARIATES,
    MAP_CMAP,
    MAP_N_LEVELS,
    MODEL_LABELS,
    NEUTRAL_COLOR,
    RESPONSE,
    RESULTS_FILE,
    RISK_MAP_YEAR,
    SIGNIFICANCE_LEVEL,
    SPATIAL_GRID_SIZE,
    SUMMARY_FILE,
)
from tb_analysis.utils import (
    SelectedModel,
    build_design_frame,
    convert_to_json_serializable,
    fit_summary,
    model_columns,
    model_matrix,
    predict_gam,
    save_figure,
    significant_terms,
)

logger = logging.getLogger("phase4_outputs")


# =============================================================================
# MODEL DIAGNOSTICS
# =============================================================================

def plot_model_diagnostics(fit: Dict[str, Any], df: pd.DataFrame, figures_dir: Path) -> None:
    """
    Four-panel residual check: QQ plot, residuals vs linear predictor,
    residual histogram and response vs fitted values.
    """
    print(f"\n[Diagnostics] {MODEL_LABELS[fit['name']]}...")
    rows = fit['row_index']
    resid = fit['residuals'].loc[rows].to_numpy()
    fitted = fit['fitted'].loc[rows].to_numpy()
    observed = df.loc[rows, RESPONSE].to_numpy(dtype=float)

    fig, axes = plt.subplots(2, 2, figsize=(10, 8))

    sm.qqplot(resid, line='s', ax=axes[0, 0], markersize=3)
    axes[0, 0].set_title('Normal Q-Q plot of residuals')

    axes[0, 1].scatter(fitted, resid, s=8, alpha=0.6, color=NEUTRAL_COLOR)
    axes[0, 1].axhline(0, color='black', linewidth=0.8)
    axes[0, 1].set_title('Residuals vs linear predictor')
    axes[0, 1].set_xlabel('Linear predictor')
    axes[0, 1].set_ylabel('Residuals')

    axes[1, 0].hist(resid, bins=30, color='lightgray', edgecolor='gray')
    axes[1, 0].set_title('Histogram of residuals')
    axes[1, 0].set_xlabel('Residuals')

    axes[1, 1].scatter(fitted, observed, s=8, alpha=0.6, color=NEUTRAL_COLOR)
    lims = [np.nanmin([fitted.min(), observed.min()]), np.nanmax([fitted.max(), observed.max()])]
    axes[1, 1].plot(lims, lims, color='black', linewidth=0.8)
    axes[1, 1].set_title('Response vs fitted values')
    axes[1, 1].set_xlabel('Fitted values')
    axes[1, 1].set_ylabel('Response')

    fig.suptitle(f"{MODEL_LABELS[fit['name']]} - n = {fit['n_obs']}", fontweight='bold')
    plt.tight_layout()
    save_figure(fig, Path(figures_dir) / f"fig_diagnostics_model_{fit['name']}")


def plot_smooth_effects(fit: Dict[str, Any], df: pd.DataFrame, figures_dir: Path) -> None:
    """Partial effect of each covariate smooth with 95% band and partial residuals."""
    print(f"\n[Effects] Smooth terms of {MODEL_LABELS[fit['name']]}...")
    gam = fit['gam']
    rows = fit['row_index']
    X_obs = build_design_frame(df.loc[rows], fit['spec']['covariates'], fit['year_levels'])
    X_obs = model_matrix(X_obs[fit['design_columns']], model_columns(fit['spec'], fit['year_levels']))
    resid = fit['residuals'].loc[rows].to_numpy()

    covariates = fit['spec']['covariates']
    n_cols = 4
    n_rows = int(np.ceil(len(covariates) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False)

    # Covariate smooths are the first terms of every model
    for term_i, col in enumerate(covariates):
        ax = axes.flat[term_i]
        feature = fit['design_columns'].index(col)
        XX = gam.generate_X_grid(term=term_i, n=100)
        pdep, confi = gam.partial_dependence(term=term_i, X=XX, width=0.95)
        partial_resid = gam.partial_dependence(term=term_i, X=X_obs) + resid

        ax.scatter(X_obs[:, feature], partial_resid, s=5, alpha=0.4, color=NEUTRAL_COLOR)
        ax.plot(XX[:, feature], pdep, color='black')
        ax.plot(XX[:, feature], confi, color='black', linestyle='--', linewidth=0.8)
        p_value = fit['term_table'].loc[term_i, 'p_value']
        edf = fit['term_table'].loc[term_i, 'edf']
        ax.set_title(f"s({col}), edf={edf:.2f}, p={p_value:.3g}", fontsize=9)
        ax.set_xlabel(col)

    for ax in list(axes.flat)[len(covariates):]:
        ax.set_visible(False)

    plt.tight_layout()
    save_figure(fig, Path(figures_dir) / f"fig_smooth_effects_model_{fit['name']}")


# =============================================================================
# SPATIAL RISK SURFACE
# =============================================================================

def spatial_prediction_grid(fit: Dict[str, Any], df: pd.DataFrame,
                            grid_size: int = SPATIAL_GRID_SIZE,
                            year: int = RISK_MAP_YEAR) -> pd.DataFrame:
    """
    Predicted log TB rate over a lon/lat grid.

    Covariates are held at their sample means and the year at `year`
    (first fitted level if that year was not observed).
    """
    lon = np.linspace(df['longitude'].min(), df['longitude'].max(), grid_size)
    lat = np.linspace(df['latitude'].min(), df['latitude'].max(), grid_size)
    lon_grid, lat_grid = np.meshgrid(lon, lat)

    grid = pd.DataFrame({'longitude': lon_grid.ravel(), 'latitude': lat_grid.ravel()})
    for col in fit['spec']['covariates']:
        grid[col] = float(np.nanmean(df[col].astype(float)))

    year_label = str(year) if str(year) in fit['year_levels'] else fit['year_levels'][0]
    grid['year_label'] = pd.Categorical([year_label] * len(grid), categories=fit['year_levels'])
    grid['pred'] = predict_gam(fit, grid)
    return grid


def plot_spatial_surface(grid: pd.DataFrame, df: pd.DataFrame, maps_dir: Path) -> None:
    """Filled contour map of a prediction grid with region centroids on top."""
    print("\n[Spatial] Predicted TB risk surface...")
    lon = np.sort(grid['longitude'].unique())
    lat = np.sort(grid['latitude'].unique())
    pred = grid.pivot(index='latitude', columns='longitude', values='pred').loc[lat, lon].to_numpy()

    fig, ax = plt.subplots(figsize=(8, 8))
    contour = ax.contourf(lon, lat, pred, levels=MAP_N_LEVELS, cmap=MAP_CMAP)
    fig.colorbar(contour, ax=ax, label='Predicted log TB rate')
    ax.scatter(df['longitude'], df['latitude'], s=4, color='black', alpha=0.5)
    ax.set_title('Predicted TB Risk (Spatial Component)')
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')
    ax.set_aspect('equal')
    save_figure(fig, Path(maps_dir) / 'map_spatial_surface')


# =============================================================================
# CONCLUSIONS
# =============================================================================

def build_conclusions(selected: SelectedModel, comparison: Dict[str, Any],
                      df: pd.DataFrame, threshold: float,
                      alpha: float = SIGNIFICANCE_LEVEL) -> Dict[str, Any]:
    """Findings of the selected model in a JSON-friendly dict."""
    return {
        'best_model': selected.label,
        'best_model_label': MODEL_LABELS[selected.label],
        'significant_covariates': significant_terms(selected.fit, alpha, kinds=('smooth',)),
        'spatial_structure': selected.has_spatial,
        'spatio_temporal_interaction': selected.has_spatio_temporal,
        'lr_tests': comparison['lr_tests'],
        'high_risk_threshold': threshold,
        'n_high_risk': int(df['high_risk'].sum()),
        'high_risk_regions': sorted(df.loc[df['high_risk'], 'region_id'].unique().tolist()),
        'recommendations': [
            "Focus resources on regions with high model residuals.",
            "Consider socio-economic factors when allocating resources.",
            "Monitor temporal trends for resource planning.",
        ],
    }


def print_conclusions(conclusions: Dict[str, Any]) -> None:
    print("\n=== ANALYSIS CONCLUSIONS ===")
    print(f"Significant socio-economic covariates (p < {SIGNIFICANCE_LEVEL}):")
    if conclusions['significant_covariates']:
        for term in conclusions['significant_covariates']:
            print(f"  {term}")
    else:
        print("  No significant covariates found.")

    if conclusions['spatial_structure']:
        print("Spatial structure is significant in the model.")
    else:
        print("No significant spatial structure detected.")

    if conclusions['spatio_temporal_interaction']:
        print("Spatio-temporal interaction is significant.")
    else:
        print("No significant spatio-temporal interaction detected.")

    print(f"Number of high-risk region-years: {conclusions['n_high_risk']}")
    print(f"High-risk threshold (95th percentile): {conclusions['high_risk_threshold']:.4f}")

    print("\n=== RESOURCE ALLOCATION RECOMMENDATIONS ===")
    for line in conclusions['recommendations']:
        print(line)


# =============================================================================
# RESULTS
# =============================================================================

def save_results(fits: List[Dict[str, Any]], df: pd.DataFrame, output_dir: Path,
                 summary: Optional[Dict[str, Any]] = None) -> Path:
    """
    Persist the fitted models and the augmented table.

    Writes one joblib artifact (overwritten if present) holding the three
    pygam models, their summaries and the augmented DataFrame. When a
    summary dict is given it is also written as JSON, and the table is
    exported as CSV for reports.

    Returns:
    --------
    Path of the joblib artifact
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    results_path = output_dir / RESULTS_FILE

    payload = {
        'models': {fit['name']: fit['gam'] for fit in fits},
        'model_summaries': {fit['name']: fit_summary(fit) for fit in fits},
        'data': df,
        'covariates': list(COVARIATES),
        'created': datetime.now().isoformat(timespec='seconds'),
    }
    joblib.dump(payload, results_path)
    logger.info(f"Saved fitted models and data to {results_path}")

    df.to_csv(output_dir / AUGMENTED_TABLE_FILE, index=False)

    if summary is not None:
        with open(output_dir / SUMMARY_FILE, 'w') as f:
            json.dump(convert_to_json_serializable(summary), f, indent=2)
        logger.info(f"Saved summary to {output_dir / SUMMARY_FILE}")

    return results_path


def load_results(path) -> Dict[str, Any]:
    """Read back an artifact written by save_results."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Results file not found: {path}")
    return joblib.load(path)
