"""
Configuration for the TB microregion GAM analysis.

Paths, column names and modelling constants shared by all phases.
Command-line overrides are handled in run_pipeline.main().
"""

from pathlib import Path

import numpy as np
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

# =============================================================================
# PATHS
# =============================================================================

BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / 'data'
DEFAULT_DATA_FILE = DATA_DIR / 'tb_microregions.csv'
OUTPUT_DIR = BASE_DIR / 'results'
RESULTS_FILE = 'TB_analysis_results.joblib'
SUMMARY_FILE = 'tb_gam_summary.json'
AUGMENTED_TABLE_FILE = 'tb_data_augmented.csv'
LOG_FILE = 'tb_analysis.log'


def figures_dir(output_dir: Path) -> Path:
    return Path(output_dir) / 'figures'


def maps_dir(output_dir: Path) -> Path:
    return Path(output_dir) / 'maps'


def ensure_dirs(output_dir: Path = OUTPUT_DIR) -> Path:
    """Create the output, figures and maps directories; return output dir."""
    output_dir = Path(output_dir)
    for d in (output_dir, figures_dir(output_dir), maps_dir(output_dir)):
        d.mkdir(parents=True, exist_ok=True)
    return output_dir


# =============================================================================
# DATA COLUMNS
# =============================================================================

# Column names as they appear in the original microregion dataset
RAW_COLUMN_MAP = {
    'TB': 'tb_cases',
    'Population': 'population',
    'lon': 'longitude',
    'lat': 'latitude',
    'Year': 'year',
    'Indigenous': 'indigenous_share',
    'Illiteracy': 'illiteracy_rate',
    'Urbanisation': 'urbanisation_level',
    'Density': 'population_density',
    'Poverty': 'poverty_rate',
    'Poor_Sanitation': 'poor_sanitation_share',
    'Unemployment': 'unemployment_rate',
    'Timeliness': 'healthcare_timeliness',
}

COVARIATES = [
    'indigenous_share',
    'illiteracy_rate',
    'urbanisation_level',
    'population_density',
    'poverty_rate',
    'poor_sanitation_share',
    'unemployment_rate',
    'healthcare_timeliness',
]

SPATIAL_COLUMNS = ['longitude', 'latitude']

REQUIRED_COLUMNS = ['tb_cases', 'population', 'year'] + SPATIAL_COLUMNS + COVARIATES

YEARS = [2013, 2014]

# =============================================================================
# ANALYSIS PARAMETERS
# =============================================================================

RATE_EPSILON = 0.001          # log(rate + eps) keeps zero-rate regions finite
RESPONSE = 'log_tb_rate'

REFERENCE_YEAR = 2014         # descriptive count/rate maps
RISK_MAP_YEAR = 2013          # residual map and spatial prediction surface
HIGH_RISK_QUANTILE = 0.95
SIGNIFICANCE_LEVEL = 0.05

# pygam basis sizes; one smoothing parameter per smooth term, chosen by GCV over LAM_GRID
SMOOTH_N_SPLINES = 10
SPATIAL_N_SPLINES = 8
LAM_GRID = np.logspace(-3, 3, 11)
LAM_SEARCH_PASSES = 2         # coordinate-wise refinement passes after the shared-lambda start
FACTOR_LAM = 1e-6             # year factor is left effectively unpenalized
GAM_MAX_ITER = 100            # PIRLS iterations per fit

SPATIAL_GRID_SIZE = 50

MODEL_LABELS = {
    'A': 'Model A (covariates only)',
    'B': 'Model B (with spatial)',
    'C': 'Model C (with spatio-temporal)',
}

# =============================================================================
# PLOTTING STYLE
# =============================================================================

MAP_N_LEVELS = 7
MAP_CMAP = 'YlOrRd'
DIVERGING_CMAP = 'RdBu_r'
HIST_COLOR = 'lightblue'
MEAN_LINE_COLOR = 'red'
HIGH_RISK_COLOR = '#e74c3c'
NEUTRAL_COLOR = '#7f8c8d'

plt.rcParams['font.family'] = 'sans-serif'
plt.rcParams['font.size'] = 10
plt.rcParams['axes.labelsize'] = 11
plt.rcParams['axes.titlesize'] = 12
plt.rcParams['figure.dpi'] = 150
plt.rcParams['savefig.dpi'] = 300
plt.rcParams['savefig.bbox'] = 'tight'
