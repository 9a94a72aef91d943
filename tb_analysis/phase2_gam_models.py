"""
Phase 2: GAM MODELLING AND MODEL SELECTION
==========================================
Fits three nested Gaussian GAMs for the log TB rate and compares them.

Models:
- A: socio-economic smooths + year effect
- B: A + spatial smooth s(longitude, latitude)
- C: B + one spatial surface per year (spatio-temporal interaction)

Comparison:
- AIC for every model; the minimum-AIC model is selected
- Chi-square likelihood-ratio tests A vs B and B vs C
"""

from typing import Any, Dict, List
import logging

import numpy as np
import pandas as pd

from tb_analysis.config import (
    LAM_GRID,
    MODEL_LABELS,
    SIGNIFICANCE_LEVEL,
    SMOOTH_N_SPLINES,
    SPATIAL_N_SPLINES,
)
from tb_analysis.utils import (
    MODEL_NAMES,
    build_model_spec,
    fit_gam,
    likelihood_ratio_test,
    select_best_model,
    summarize_gam,
)

logger = logging.getLogger("phase2_gam_models")


def fit_candidate_models(
    df: pd.DataFrame,
    n_splines: int = SMOOTH_N_SPLINES,
    spatial_n_splines: int = SPATIAL_N_SPLINES,
    lam_grid: np.ndarray = LAM_GRID,
    verbose: bool = True,
) -> List[Dict[str, Any]]:
    """Fit Models A, B and C in order; returns their fit dicts."""
    fits = []
    for name in MODEL_NAMES:
        spec = build_model_spec(name)
        if verbose:
            print(f"\n  Fitting {MODEL_LABELS[name]}...")
        fit = fit_gam(df, spec, n_splines=n_splines,
                      spatial_n_splines=spatial_n_splines, lam_grid=lam_grid)
        logger.info(f"Model {name}: n={fit['n_obs']} edof={fit['edof']:.2f} AIC={fit['aic']:.2f}")
        if verbose:
            print(f"  {MODEL_LABELS[name]} Summary:")
            print(summarize_gam(fit))
        fits.append(fit)
    return fits


def compare_models(fits: List[Dict[str, Any]],
                   alpha: float = SIGNIFICANCE_LEVEL) -> Dict[str, Any]:
    """
    AIC table, nested likelihood-ratio tests and the selected model.

    Parameters:
    -----------
    fits : fit dicts for Models A, B, C (in that order)

    Returns:
    --------
    Dict with 'aic_table', 'lr_tests' (A vs B, B vs C) and 'selected'
    """
    lr_tests = [likelihood_ratio_test(small, large, alpha=alpha)
                for small, large in zip(fits[:-1], fits[1:])]
    selected = select_best_model(fits)

    return {
        'aic_table': selected.aic_table,
        'lr_tests': lr_tests,
        'selected': selected,
    }


def print_model_comparison(comparison: Dict[str, Any]) -> None:
    for test in comparison['lr_tests']:
        verdict = 'justified' if test['significant'] else 'not justified'
        print(f"  Model comparison ({test['models']}): LR = {test['statistic']:.3f}, "
              f"df = {test['df']:.2f}, p = {test['p_value']:.4g} -> extra complexity {verdict}")

    print("  AIC values:")
    for row in comparison['aic_table'].itertuples(index=False):
        print(f"    {MODEL_LABELS[row.model]}: {row.aic:.3f}")

    print(f"  Best model based on AIC: {MODEL_LABELS[comparison['selected'].label]}")
