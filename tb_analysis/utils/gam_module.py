"""
GAM Utilities Module
====================
Design-matrix construction, penalized GAM fitting, model comparison and
selection for the TB microregion analysis.

Model family (Gaussian, identity link, response = log TB rate):
- Model A: s(covariate_1) + ... + s(covariate_8) + f(year)
- Model B: Model A + te(longitude, latitude)
- Model C: Model B + te(longitude, latitude, by=year) for each year level

Key features:
1. One shared design matrix; each model uses a subset of its columns
2. Per-model complete-case rows (a missing predictor only drops the row
   from the models that use that predictor)
3. One smoothing parameter per smooth term, chosen by GCV (coordinate-wise
   search over a grid); the year factor is effectively unpenalized
4. Likelihood-ratio (chi-square) tests for nested models
5. Minimum-AIC selection with deterministic tie-break

Dependencies:
- numpy, pandas, pygam, scipy

Author: TB Microregion Analysis Pipeline
"""

from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Dict, List, Optional, Sequence
import contextlib
import io
import logging
import operator
import warnings

import numpy as np
import pandas as pd
from pygam import LinearGAM, s, f, te
from scipy import stats

from tb_analysis.config import (
    COVARIATES,
    FACTOR_LAM,
    GAM_MAX_ITER,
    LAM_GRID,
    LAM_SEARCH_PASSES,
    RESPONSE,
    SIGNIFICANCE_LEVEL,
    SMOOTH_N_SPLINES,
    SPATIAL_N_SPLINES,
)

logger = logging.getLogger("gam_module")
warnings.filterwarnings("ignore", category=FutureWarning)

# pygam's default smoothing parameter, used when no search result is given
DEFAULT_LAM = 0.6


# =============================================================================
# MODEL SPECIFICATIONS
# =============================================================================

MODEL_NAMES = ('A', 'B', 'C')


def build_model_spec(name: str, covariates: Sequence[str] = COVARIATES) -> Dict[str, Any]:
    """
    Describe the term layout of one of the three nested models.

    Parameters:
    -----------
    name : str
        'A' (covariates + year), 'B' (A + spatial smooth) or
        'C' (B + spatial smooth per year)
    covariates : list of str
        Columns entering as univariate smooths

    Returns:
    --------
    dict with name, covariates, spatial and spatio_temporal flags
    """
    if name not in MODEL_NAMES:
        raise ValueError(f"Unknown model '{name}', expected one of {MODEL_NAMES}")

    return {
        'name': name,
        'covariates': list(covariates),
        'spatial': name in ('B', 'C'),
        'spatio_temporal': name == 'C',
    }


def model_formula(spec: Dict[str, Any]) -> str:
    """R-style formula string of a model spec, for reports."""
    terms = [f"s({c})" for c in spec['covariates']] + ['year_label']
    if spec['spatial']:
        terms.append('s(longitude, latitude)')
    if spec['spatio_temporal']:
        terms.append('s(longitude, latitude, by=year_label)')
    return f"{RESPONSE} ~ " + ' + '.join(terms)


def year_indicator_column(level: str) -> str:
    return f"year_is_{level}"


def build_design_frame(df: pd.DataFrame,
                       covariates: Sequence[str] = COVARIATES,
                       year_levels: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    Build the numeric design frame shared by all three models.

    Column layout: covariates, year_code, longitude, latitude, then one
    0/1 indicator per year level (the by-variables of Model C).

    Parameters:
    -----------
    df : DataFrame with covariates, longitude, latitude and year_label
    year_levels : list of str, optional
        Year categories used for coding. Defaults to the categories of
        df['year_label']; pass the fitted levels when predicting.
    """
    if year_levels is None:
        year_levels = [str(c) for c in pd.Categorical(df['year_label']).categories]
    year_levels = [str(c) for c in year_levels]

    year_str = df['year_label'].astype(str)
    year_code = pd.Categorical(year_str, categories=year_levels).codes.astype(float)
    year_code[year_code < 0] = np.nan

    design = pd.DataFrame(index=df.index)
    for col in covariates:
        design[col] = df[col].astype(float)
    design['year_code'] = year_code
    design['longitude'] = df['longitude'].astype(float)
    design['latitude'] = df['latitude'].astype(float)
    for level in year_levels:
        design[year_indicator_column(level)] = (year_str == level).astype(float)

    return design


def model_columns(spec: Dict[str, Any], year_levels: Sequence[str]) -> List[str]:
    """Design columns a model reads; rows missing any of them are excluded."""
    cols = list(spec['covariates']) + ['year_code']
    if spec['spatial']:
        cols += ['longitude', 'latitude']
    if spec['spatio_temporal']:
        cols += [year_indicator_column(level) for level in year_levels]
    return cols


def model_matrix(design: pd.DataFrame, cols: Sequence[str]) -> np.ndarray:
    """Design matrix with columns the model does not read zero-filled."""
    unused = [c for c in design.columns if c not in cols]
    return design.fillna({c: 0.0 for c in unused}).to_numpy(dtype=float)


def build_terms(spec: Dict[str, Any],
                design_columns: Sequence[str],
                year_levels: Sequence[str],
                n_splines: int = SMOOTH_N_SPLINES,
                spatial_n_splines: int = SPATIAL_N_SPLINES,
                lams: Optional[Sequence[float]] = None):
    """
    Assemble the pygam TermList for a model spec.

    Parameters:
    -----------
    lams : list of float, optional
        One smoothing parameter per term in label order (intercept
        excluded). Tensor terms use the value on both margins. Defaults
        to pygam's 0.6 for smooths and FACTOR_LAM for the year factor.

    Returns:
    --------
    terms : pygam TermList
    labels : list of (label, kind) in term order, intercept excluded
    """
    idx = {c: i for i, c in enumerate(design_columns)}
    n_terms = len(spec['covariates']) + 1 + int(spec['spatial'])
    if spec['spatio_temporal']:
        n_terms += len(year_levels)
    if lams is not None and len(lams) != n_terms:
        raise ValueError(f"Model {spec['name']}: expected {n_terms} smoothing parameters, got {len(lams)}")
    lam_iter = iter(float(v) for v in lams) if lams is not None else None

    def next_lam(default=DEFAULT_LAM):
        return next(lam_iter) if lam_iter is not None else default

    terms = []
    labels = []

    for col in spec['covariates']:
        terms.append(s(idx[col], n_splines=n_splines, lam=next_lam()))
        labels.append((f"s({col})", 'smooth'))

    terms.append(f(idx['year_code'], lam=next_lam(FACTOR_LAM)))
    labels.append(('year_label', 'parametric'))

    if spec['spatial']:
        lam = next_lam()
        terms.append(te(idx['longitude'], idx['latitude'],
                        n_splines=[spatial_n_splines, spatial_n_splines], lam=[lam, lam]))
        labels.append(('s(longitude,latitude)', 'spatial'))

    if spec['spatio_temporal']:
        for level in year_levels:
            lam = next_lam()
            terms.append(te(idx['longitude'], idx['latitude'],
                            n_splines=[spatial_n_splines, spatial_n_splines], lam=[lam, lam],
                            by=idx[year_indicator_column(level)]))
            labels.append((f"s(longitude,latitude):year_label{level}", 'spatio_temporal'))

    return reduce(operator.add, terms), labels


def pirls_converged(gam: LinearGAM) -> bool:
    """True if the last PIRLS step of a fitted model moved the coefficients less than gam.tol."""
    diffs = getattr(gam, 'logs_', {}).get('diffs', [])
    return bool(len(diffs)) and bool(np.isfinite(diffs[-1])) and diffs[-1] < gam.tol


# =============================================================================
# SMOOTHING PARAMETER SELECTION
# =============================================================================

def search_smoothing(
    X: np.ndarray,
    y: np.ndarray,
    spec: Dict[str, Any],
    design_columns: Sequence[str],
    year_levels: Sequence[str],
    n_splines: int = SMOOTH_N_SPLINES,
    spatial_n_splines: int = SPATIAL_N_SPLINES,
    lam_grid: np.ndarray = LAM_GRID,
    passes: int = LAM_SEARCH_PASSES,
    max_iter: int = GAM_MAX_ITER,
):
    """
    GCV search of one smoothing parameter per smooth term.

    Starts from the best value shared by all smooths on lam_grid, then
    moves each smooth term in turn over the grid with the others held
    fixed. Stops after `passes` sweeps or the first sweep without an
    improvement. The year factor stays at FACTOR_LAM.

    Returns:
    --------
    gam : fitted LinearGAM at the selected smoothing parameters
    lams : list of float, one per term (intercept excluded)
    n_fits : number of candidate fits
    """
    _, labels = build_terms(spec, design_columns, year_levels, n_splines, spatial_n_splines)
    smooth_pos = [i for i, (_, kind) in enumerate(labels) if kind != 'parametric']

    def shared(value):
        return [FACTOR_LAM if kind == 'parametric' else float(value) for _, kind in labels]

    def fit_at(lams):
        terms, _ = build_terms(spec, design_columns, year_levels, n_splines, spatial_n_splines, lams=lams)
        gam = LinearGAM(terms, max_iter=max_iter).fit(X, y)
        return gam, float(gam.statistics_['GCV'])

    best_gam, best_lams, best_score = None, None, np.inf
    n_fits = 0

    def consider(lams):
        nonlocal best_gam, best_lams, best_score, n_fits
        n_fits += 1
        try:
            gam, score = fit_at(lams)
        except ValueError as e:
            logger.debug(f"Model {spec['name']}: candidate {lams} failed: {e}")
            return False
        if best_gam is None or score < best_score:
            best_gam, best_lams, best_score = gam, lams, score
            return True
        return False

    for value in lam_grid:
        consider(shared(value))
    if best_gam is None:
        raise ValueError(f"Model {spec['name']}: no smoothing parameter on the grid gave a valid fit")

    for _ in range(passes):
        improved = False
        for pos in smooth_pos:
            for value in lam_grid:
                if np.isclose(value, best_lams[pos]):
                    continue
                trial = list(best_lams)
                trial[pos] = float(value)
                improved = consider(trial) or improved
        if not improved:
            break

    logger.info(f"Model {spec['name']}: GCV={best_score:.5f} after {n_fits} candidate fits")
    return best_gam, best_lams, n_fits


# =============================================================================
# MODEL FITTING
# =============================================================================

def fit_gam(
    df: pd.DataFrame,
    spec: Dict[str, Any],
    response: str = RESPONSE,
    n_splines: int = SMOOTH_N_SPLINES,
    spatial_n_splines: int = SPATIAL_N_SPLINES,
    lam_grid: np.ndarray = LAM_GRID,
    max_iter: int = GAM_MAX_ITER,
) -> Dict[str, Any]:
    """
    Fit one Gaussian GAM with GCV-selected smoothing parameters.

    Rows with a missing value in any predictor the model uses, or a
    non-finite response, are excluded from this model only. Fitted values
    and residuals are returned aligned to df.index (NaN on excluded rows).

    Parameters:
    -----------
    df : DataFrame with response, covariates, coordinates and year_label
    spec : dict from build_model_spec
    n_splines : basis size of each univariate smooth
    spatial_n_splines : basis size per margin of the spatial tensor smooths
    lam_grid : smoothing-parameter candidates searched by GCV for each term
    max_iter : PIRLS iteration limit of every fit

    Returns:
    --------
    Dict with gam, AIC, log-likelihood, edof, term table, fitted values,
    residuals and convergence diagnostics
    """
    year_levels = [str(c) for c in pd.Categorical(df['year_label']).categories]
    design = build_design_frame(df, spec['covariates'], year_levels)
    cols = model_columns(spec, year_levels)

    y_all = df[response].astype(float)
    keep = design[cols].notna().all(axis=1) & np.isfinite(y_all)
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info(f"Model {spec['name']}: excluding {n_dropped} rows with missing predictors/response")

    X = model_matrix(design.loc[keep], cols)
    y = y_all.loc[keep].to_numpy(dtype=float)

    # pygam reports PIRLS non-convergence with print(), not a warning
    pygam_out = io.StringIO()
    with warnings.catch_warnings(record=True) as caught, contextlib.redirect_stdout(pygam_out):
        warnings.simplefilter("always")
        gam, lams, n_fits = search_smoothing(X, y, spec, list(design.columns), year_levels,
                                             n_splines=n_splines, spatial_n_splines=spatial_n_splines,
                                             lam_grid=lam_grid, max_iter=max_iter)
    _, labels = build_terms(spec, list(design.columns), year_levels, n_splines, spatial_n_splines)

    fit_warnings = [str(w.message) for w in caught
                    if not issubclass(w.category, (FutureWarning, DeprecationWarning))]
    n_unconverged = pygam_out.getvalue().count('did not converge')
    if n_unconverged:
        logger.info(f"Model {spec['name']}: {n_unconverged} of {n_fits} candidate fits did not converge")

    stats_ = gam.statistics_
    aic = float(stats_['AIC'])
    converged = bool(np.isfinite(aic)) and pirls_converged(gam)
    if not converged:
        fit_warnings.append(f"PIRLS did not converge within {max_iter} iterations")
    for msg in fit_warnings:
        logger.warning(f"Model {spec['name']}: {msg}")
    if not converged:
        logger.warning(f"Model {spec['name']}: selected fit did not converge; using the returned fit")

    mu = gam.predict(X)
    fitted = pd.Series(np.nan, index=df.index, name='fitted')
    fitted.loc[keep] = mu
    residuals = pd.Series(np.nan, index=df.index, name='residual')
    residuals.loc[keep] = y - mu

    return {
        'name': spec['name'],
        'spec': spec,
        'formula': model_formula(spec),
        'gam': gam,
        'design_columns': list(design.columns),
        'year_levels': year_levels,
        'n_obs': int(keep.sum()),
        'row_index': df.index[keep],
        'aic': aic,
        'loglik': float(stats_['loglikelihood']),
        'edof': float(stats_['edof']),
        'deviance': float(stats_['deviance']),
        'scale': float(stats_['scale']),
        'pseudo_r2': float(stats_['pseudo_r2']['explained_deviance']),
        'lam': [float(v) for v in lams],
        'term_table': term_table(gam, labels),
        'fitted': fitted,
        'residuals': residuals,
        'converged': converged,
        'warnings': fit_warnings,
    }


def term_table(gam: LinearGAM, labels: List[tuple]) -> pd.DataFrame:
    """
    Per-term effective degrees of freedom and p-values.

    pygam appends the intercept as the last term; it is reported under
    the label 'intercept'.
    """
    p_values = gam.statistics_['p_values']
    edof_per_coef = np.asarray(gam.statistics_['edof_per_coef'])

    rows = []
    label_iter = iter(labels)
    for i, term in enumerate(gam.terms):
        if term.isintercept:
            label, kind = 'intercept', 'parametric'
        else:
            label, kind = next(label_iter)
        coef_idx = gam.terms.get_coef_indices(i)
        rows.append({
            'term': label,
            'kind': kind,
            'edf': float(edof_per_coef[coef_idx].sum()),
            'p_value': float(p_values[i]),
        })
    return pd.DataFrame(rows)


def predict_gam(fit: Dict[str, Any], df: pd.DataFrame) -> np.ndarray:
    """Predict the response for new rows using the fitted design layout."""
    design = build_design_frame(df, fit['spec']['covariates'], fit['year_levels'])
    design = design[fit['design_columns']]
    return fit['gam'].predict(model_matrix(design, model_columns(fit['spec'], fit['year_levels'])))


def summarize_gam(fit: Dict[str, Any]) -> str:
    """Text summary of a fitted model: terms, edf, p-values and fit statistics."""
    lines = [
        f"Formula: {fit['formula']}",
        "Family: gaussian, link: identity",
        f"n = {fit['n_obs']}   edof = {fit['edof']:.2f}   "
        f"explained deviance = {fit['pseudo_r2'] * 100:.1f}%",
        f"AIC = {fit['aic']:.2f}   log-likelihood = {fit['loglik']:.2f}   scale = {fit['scale']:.4f}",
        "",
        fit['term_table'].to_string(index=False, float_format=lambda v: f"{v:.4g}"),
    ]
    if not fit['converged']:
        lines.append("WARNING: fit did not converge cleanly")
    return '\n'.join(lines)


def significant_terms(fit: Dict[str, Any], alpha: float = SIGNIFICANCE_LEVEL,
                      kinds: Sequence[str] = ('smooth',)) -> List[str]:
    """Labels of terms of the given kinds with p-value below alpha."""
    table = fit['term_table']
    mask = table['kind'].isin(kinds) & (table['p_value'] < alpha)
    return table.loc[mask, 'term'].tolist()


# =============================================================================
# MODEL COMPARISON
# =============================================================================

def likelihood_ratio_test(small: Dict[str, Any], large: Dict[str, Any],
                          alpha: float = SIGNIFICANCE_LEVEL) -> Dict[str, Any]:
    """
    Chi-square likelihood-ratio test of a model against a richer nested one.

    Parameters:
    -----------
    small, large : fit dicts from fit_gam (small nested in large)
    alpha : significance level

    Returns:
    --------
    Dict with statistic, df (difference in effective degrees of freedom),
    p-value and whether the extra complexity is justified
    """
    if small['n_obs'] != large['n_obs']:
        logger.warning(f"LR test {small['name']} vs {large['name']}: models fit on different "
                       f"samples ({small['n_obs']} vs {large['n_obs']} rows)")

    statistic = 2.0 * (large['loglik'] - small['loglik'])
    df = large['edof'] - small['edof']

    if df > 0:
        p_value = float(stats.chi2.sf(max(statistic, 0.0), df))
    else:
        logger.warning(f"LR test {small['name']} vs {large['name']}: non-positive df={df:.3f}")
        p_value = np.nan

    return {
        'models': f"{small['name']} vs {large['name']}",
        'loglik_small': small['loglik'],
        'loglik_large': large['loglik'],
        'statistic': float(statistic),
        'df': float(df),
        'p_value': p_value,
        'significant': bool(np.isfinite(p_value) and p_value < alpha),
    }


@dataclass
class SelectedModel:
    """The minimum-AIC model and the AIC table it was chosen from."""
    label: str
    fit: Dict[str, Any]
    aic_table: pd.DataFrame = field(repr=False)

    @property
    def has_spatial(self) -> bool:
        return self.fit['spec']['spatial']

    @property
    def has_spatio_temporal(self) -> bool:
        return self.fit['spec']['spatio_temporal']


def select_best_model(fits: Sequence[Dict[str, Any]]) -> SelectedModel:
    """
    Pick the minimum-AIC fit.

    Fits are compared in the order given (A, B, C); on an exact AIC tie
    the earlier, simpler model wins.
    """
    if not fits:
        raise ValueError("No fitted models to select from")

    aic_table = pd.DataFrame({
        'model': [fit['name'] for fit in fits],
        'aic': [fit['aic'] for fit in fits],
        'edof': [fit['edof'] for fit in fits],
        'n_obs': [fit['n_obs'] for fit in fits],
    })

    best_pos = 0
    for pos, fit in enumerate(fits):
        if fit['aic'] < fits[best_pos]['aic']:
            best_pos = pos

    best = fits[best_pos]
    aic_table['delta_aic'] = aic_table['aic'] - best['aic']
    aic_table['selected'] = aic_table['model'] == best['name']

    return SelectedModel(label=best['name'], fit=best, aic_table=aic_table)


# =============================================================================
# SERIALIZATION
# =============================================================================

def fit_summary(fit: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-friendly summary of a fit dict (no model object, no series)."""
    return {
        'name': fit['name'],
        'formula': fit['formula'],
        'n_obs': fit['n_obs'],
        'aic': fit['aic'],
        'loglik': fit['loglik'],
        'edof': fit['edof'],
        'deviance': fit['deviance'],
        'scale': fit['scale'],
        'explained_deviance': fit['pseudo_r2'],
        'lam': fit['lam'],
        'converged': fit['converged'],
        'warnings': fit['warnings'],
        'terms': fit['term_table'].to_dict(orient='records'),
    }


def convert_to_json_serializable(obj: Any) -> Any:
    """
    Recursively convert numpy/pandas types to JSON-serializable Python types.
    NaN and infinite floats become None.
    """
    if isinstance(obj, (np.integer,)):
        return int(obj)
    elif isinstance(obj, (float, np.floating)):
        return float(obj) if np.isfinite(obj) else None
    elif isinstance(obj, np.ndarray):
        return convert_to_json_serializable(obj.tolist())
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, pd.DataFrame):
        return convert_to_json_serializable(obj.to_dict(orient='records'))
    elif isinstance(obj, pd.Series):
        return convert_to_json_serializable(obj.tolist())
    elif isinstance(obj, dict):
        return {
            (int(k) if isinstance(k, np.integer) else str(k) if not isinstance(k, (str, int)) else k):
            convert_to_json_serializable(v)
            for k, v in obj.items()
        }
    elif isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]
    return obj
