"""
Utilities module for the TB microregion GAM analysis.

Contains:
- gam_module: design matrix, penalized GAM fitting (pygam), likelihood-ratio
  tests, minimum-AIC selection and JSON serialization helpers.
- map_module: per-region choropleth helper (geopandas) and figure saving.

Model fitting:
- build_model_spec / model_formula: term layout of Models A, B, C
- fit_gam: GCV-tuned Gaussian GAM on the model's complete-case rows
- predict_gam: predictions on new rows with the fitted design layout

Comparison:
- likelihood_ratio_test: chi-square test for nested fits
- select_best_model: minimum AIC, ties to the simpler model
"""

from .gam_module import (
    # Model specification
    MODEL_NAMES,
    build_model_spec,
    model_formula,
    build_design_frame,
    model_columns,
    model_matrix,

    # Fitting and prediction
    fit_gam,
    predict_gam,
    summarize_gam,
    significant_terms,

    # Comparison and selection
    likelihood_ratio_test,
    select_best_model,
    SelectedModel,

    # Serialization
    fit_summary,
    convert_to_json_serializable,
)
from .map_module import bin_values, plot_map, save_figure

__all__ = [
    'MODEL_NAMES',
    'build_model_spec',
    'model_formula',
    'build_design_frame',
    'model_columns',
    'model_matrix',
    'fit_gam',
    'predict_gam',
    'summarize_gam',
    'significant_terms',
    'likelihood_ratio_test',
    'select_best_model',
    'SelectedModel',
    'fit_summary',
    'convert_to_json_serializable',
    'bin_values',
    'plot_map',
    'save_figure',
]
