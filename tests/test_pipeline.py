import math

import numpy as np
import pytest

from tb_analysis.config import LOG_FILE, RESULTS_FILE, SUMMARY_FILE
from tb_analysis.phase0_data_prep import derive_features
from tb_analysis.phase2_gam_models import fit_candidate_models
from tb_analysis.phase4_outputs import load_results
from tb_analysis.run_pipeline import main, parse_args, run_analysis
from tests.conftest import (
    TEST_LAM_GRID,
    TEST_N_SPLINES,
    TEST_SPATIAL_N_SPLINES,
)


def test_parse_args_defaults():
    args = parse_args([])
    assert not args.no_plots
    assert args.data.endswith('tb_microregions.csv')


def test_end_to_end_toy_region(synthetic_table):
    data = derive_features(synthetic_table)
    first = data[(data['region_id'] == 1) & (data['year'] == 2013)].iloc[0]
    assert first['tb_rate'] == pytest.approx(0.01)
    assert first['log_tb_rate'] == pytest.approx(math.log(0.011))

    fit_a = fit_candidate_models(data, n_splines=TEST_N_SPLINES,
                                 spatial_n_splines=TEST_SPATIAL_N_SPLINES,
                                 lam_grid=TEST_LAM_GRID, verbose=False)[0]
    assert np.isfinite(fit_a['aic'])
    assert fit_a['converged']


def test_run_analysis_without_plots(tmp_path, raw_csv, capsys):
    results = run_analysis(raw_csv, tmp_path / 'out', n_splines=TEST_N_SPLINES,
                           spatial_n_splines=TEST_SPATIAL_N_SPLINES, make_plots=False)

    data = results['data']
    assert {'tb_rate', 'log_tb_rate', 'year_label', 'fitted', 'residual', 'high_risk'} <= set(data.columns)
    assert results['comparison']['selected'].label in ('A', 'B', 'C')
    assert results['temporal_summary']['n_regions'].tolist() == [80, 80]

    saved = load_results(tmp_path / 'out' / RESULTS_FILE)
    assert set(saved['models']) == {'A', 'B', 'C'}
    assert saved['data']['high_risk'].sum() == data['high_risk'].sum()
    assert (tmp_path / 'out' / SUMMARY_FILE).exists()

    out = capsys.readouterr().out
    assert 'Best model based on AIC' in out
    assert 'RESOURCE ALLOCATION RECOMMENDATIONS' in out


def test_selection_is_deterministic(tmp_path, raw_csv):
    first = run_analysis(raw_csv, tmp_path / 'run1', n_splines=TEST_N_SPLINES,
                         spatial_n_splines=TEST_SPATIAL_N_SPLINES, make_plots=False)
    second = run_analysis(raw_csv, tmp_path / 'run2', n_splines=TEST_N_SPLINES,
                          spatial_n_splines=TEST_SPATIAL_N_SPLINES, make_plots=False)
    assert first['comparison']['selected'].label == second['comparison']['selected'].label
    np.testing.assert_allclose(first['comparison']['aic_table']['aic'],
                               second['comparison']['aic_table']['aic'])


def test_main_writes_figures(tmp_path, raw_csv):
    out_dir = tmp_path / 'full'
    status = main(['--data', str(raw_csv), '--output-dir', str(out_dir),
                   '--n-splines', str(TEST_N_SPLINES),
                   '--spatial-n-splines', str(TEST_SPATIAL_N_SPLINES)])
    assert status == 0
    assert (out_dir / LOG_FILE).exists()
    assert (out_dir / 'figures' / 'fig_covariate_correlation.png').exists()
    assert (out_dir / 'figures' / 'fig_diagnostics_model_C.png').exists()
    assert (out_dir / 'maps' / 'map_tb_rate_2014.png').exists()
    assert (out_dir / 'maps' / 'map_residuals_2013.png').exists()


def test_main_missing_input(tmp_path):
    status = main(['--data', str(tmp_path / 'nope.csv'), '--output-dir', str(tmp_path / 'out')])
    assert status == 1
