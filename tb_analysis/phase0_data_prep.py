"""
Phase 0: DATA LOADING AND PREPARATION
=====================================
Loads the microregion × year TB table, derives rate columns and documents
the dataset (dimensions, summary statistics, missingness).

Input:
- One CSV or Parquet file with the observation table. Column names of the
  original dataset (TB, Population, lon, lat, Year, Indigenous, ...) are
  renamed to the analysis names on load.

Derived columns:
- tb_rate = tb_cases / population
- log_tb_rate = log(tb_rate + 0.001)
- year_label = year as a categorical label
"""

from pathlib import Path
from typing import Any, Dict
import logging

import numpy as np
import pandas as pd

from tb_analysis.config import (
    COVARIATES,
    RATE_EPSILON,
    RAW_COLUMN_MAP,
    REQUIRED_COLUMNS,
)

logger = logging.getLogger("phase0_data_prep")


# =============================================================================
# LOADING
# =============================================================================

def validate_columns(df: pd.DataFrame) -> None:
    """Raise KeyError if any required column is missing."""
    missing_cols = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing_cols:
        raise KeyError(f"Missing expected columns: {missing_cols}")


def load_dataset(path) -> pd.DataFrame:
    """
    Read the observation table once.

    Parameters:
    -----------
    path : str or Path to a .csv or .parquet file

    Returns:
    --------
    DataFrame with analysis column names and a region_id column
    """
    path = Path(path)
    if not path.exists():
        logger.error(f"Input data not found: {path}")
        raise FileNotFoundError(f"Input data not found: {path}")

    suffix = path.suffix.lower()
    if suffix == '.csv':
        df = pd.read_csv(path)
    elif suffix in ('.parquet', '.pq'):
        df = pd.read_parquet(path)
    else:
        raise ValueError(f"Unsupported input format '{suffix}' (expected .csv or .parquet)")

    df = df.rename(columns=RAW_COLUMN_MAP)
    validate_columns(df)

    if 'region_id' not in df.columns:
        # Coordinates are fixed per microregion and repeated across years
        df['region_id'] = df.groupby(['longitude', 'latitude'], sort=False).ngroup() + 1

    logger.info(f"Loaded {path.name}: {len(df):,} rows, {df['region_id'].nunique()} regions")
    return df


# =============================================================================
# DERIVED FEATURES
# =============================================================================

def derive_features(df: pd.DataFrame, epsilon: float = RATE_EPSILON) -> pd.DataFrame:
    """
    Return a copy of df with tb_rate, log_tb_rate and year_label.

    Rates are always recomputed from tb_cases and population. Zero
    population is not guarded: the rate becomes inf (or NaN for 0/0) and
    the affected rows are only reported.
    """
    out = df.copy()
    cases = out['tb_cases'].astype(float)
    population = out['population'].astype(float)

    with np.errstate(divide='ignore', invalid='ignore'):
        rate = cases / population
        log_rate = np.log(rate + epsilon)

    out['tb_rate'] = rate
    out['log_tb_rate'] = log_rate
    out['year_label'] = pd.Categorical(out['year'].astype(str))

    n_bad = int((~np.isfinite(rate) & population.notna()).sum())
    if n_bad:
        logger.warning(f"{n_bad} rows have zero population; tb_rate is not finite for them")

    return out


# =============================================================================
# DOCUMENTATION
# =============================================================================

def document_dataset(df: pd.DataFrame) -> Dict[str, Any]:
    """
    Dimensions, variable names, summary statistics and missing values.

    Returns:
    --------
    Dict with n_rows, n_cols, columns, summary (DataFrame) and missing (Series)
    """
    return {
        'n_rows': int(df.shape[0]),
        'n_cols': int(df.shape[1]),
        'columns': list(df.columns),
        'summary': df.describe(include='all').T,
        'missing': df.isna().sum(),
    }


def print_data_report(doc: Dict[str, Any]) -> None:
    print(f"  Data dimensions: {doc['n_rows']} {doc['n_cols']}")
    print(f"  Variable names: {', '.join(doc['columns'])}")
    print("  Data summary:")
    print(doc['summary'].to_string())
    print("  Missing values per variable:")
    print(doc['missing'].to_string())

    missing_cov = doc['missing'].reindex(COVARIATES).fillna(0)
    if missing_cov.sum() > 0:
        print(f"  Covariates with missing values: {missing_cov[missing_cov > 0].index.tolist()}")
