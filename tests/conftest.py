import logging

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from tb_analysis.config import COVARIATES, RAW_COLUMN_MAP
from tb_analysis.phase0_data_prep import derive_features
from tb_analysis.phase2_gam_models import fit_candidate_models

# Small bases and a short lambda grid keep the test fits fast
TEST_N_SPLINES = 5
TEST_SPATIAL_N_SPLINES = 4
TEST_LAM_GRID = np.logspace(-2, 3, 4)


def make_synthetic_table(n_regions: int = 80, seed: int = 42) -> pd.DataFrame:
    """Microregion x year table with a spatial gradient and two covariate effects."""
    rng = np.random.default_rng(seed)
    lon = rng.uniform(-70, -35, n_regions)
    lat = rng.uniform(-30, 3, n_regions)
    base_cov = {c: rng.uniform(0, 1, n_regions) for c in COVARIATES}

    rows = []
    for year in (2013, 2014):
        cov = {c: np.clip(v + rng.normal(0, 0.02, n_regions), 0, 1) for c, v in base_cov.items()}
        population = rng.integers(5_000, 500_000, n_regions)
        log_rate = (-6.0 + 1.2 * cov['poverty_rate'] + 0.8 * np.sin(3 * cov['illiteracy_rate'])
                    + 0.02 * (lon + 52) + 0.1 * (year == 2014) + rng.normal(0, 0.2, n_regions))
        cases = rng.poisson(np.exp(log_rate) * population)
        for i in range(n_regions):
            row = {'region_id': i + 1, 'year': year, 'tb_cases': int(cases[i]),
                   'population': int(population[i]), 'longitude': lon[i], 'latitude': lat[i]}
            row.update({c: float(cov[c][i]) for c in COVARIATES})
            rows.append(row)

    df = pd.DataFrame(rows)
    # Region 1 in 2013: 10 cases per 1000 inhabitants
    first = (df['region_id'] == 1) & (df['year'] == 2013)
    df.loc[first, 'tb_cases'] = 10
    df.loc[first, 'population'] = 1000
    # A few missing covariate values
    df.loc[[5, 17, 90], 'healthcare_timeliness'] = np.nan
    return df


def make_toy_table() -> pd.DataFrame:
    """4 regions x 2 years with known case counts."""
    cases = {2013: [10, 25, 0, 40], 2014: [12, 20, 3, 50]}
    population = [1000, 5000, 2000, 8000]
    rows = []
    for year, year_cases in cases.items():
        for i in range(4):
            row = {'region_id': i + 1, 'year': year, 'tb_cases': year_cases[i],
                   'population': population[i], 'longitude': -50.0 + i, 'latitude': -10.0 - i}
            row.update({c: 0.1 * (j + 1) + 0.05 * i + 0.01 * (year - 2013)
                        for j, c in enumerate(COVARIATES)})
            rows.append(row)
    return pd.DataFrame(rows)


def to_raw_names(df: pd.DataFrame) -> pd.DataFrame:
    """Rename analysis columns back to the original dataset's names."""
    reverse = {v: k for k, v in RAW_COLUMN_MAP.items()}
    return df.drop(columns=['region_id']).rename(columns=reverse)


@pytest.fixture(scope="session")
def synthetic_table():
    return make_synthetic_table()


@pytest.fixture(scope="session")
def synthetic_data(synthetic_table):
    return derive_features(synthetic_table)


@pytest.fixture
def toy_table():
    return make_toy_table()


@pytest.fixture(scope="session")
def fitted_models(synthetic_data):
    return fit_candidate_models(synthetic_data, n_splines=TEST_N_SPLINES,
                                spatial_n_splines=TEST_SPATIAL_N_SPLINES,
                                lam_grid=TEST_LAM_GRID, verbose=False)


@pytest.fixture
def raw_csv(tmp_path, synthetic_table):
    path = tmp_path / "tb_raw.csv"
    to_raw_names(synthetic_table).to_csv(path, index=False)
    return path


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; put the test session's handlers back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
