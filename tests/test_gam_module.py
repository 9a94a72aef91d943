import json
import logging

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from tb_analysis.config import COVARIATES, FACTOR_LAM
from tb_analysis.utils import (
    build_design_frame,
    build_model_spec,
    convert_to_json_serializable,
    fit_gam,
    likelihood_ratio_test,
    model_formula,
    predict_gam,
    select_best_model,
    significant_terms,
    summarize_gam,
)
from tb_analysis.utils.gam_module import build_terms, pirls_converged
from tests.conftest import TEST_LAM_GRID, TEST_N_SPLINES, TEST_SPATIAL_N_SPLINES


def _fit(df, name):
    return fit_gam(df, build_model_spec(name), n_splines=TEST_N_SPLINES,
                   spatial_n_splines=TEST_SPATIAL_N_SPLINES, lam_grid=TEST_LAM_GRID)


def _fake_fit(name, aic, loglik=0.0, edof=1.0, n_obs=100):
    return {'name': name, 'aic': aic, 'loglik': loglik, 'edof': edof, 'n_obs': n_obs,
            'spec': build_model_spec(name)}


# =============================================================================
# MODEL SPECIFICATION
# =============================================================================

def test_model_specs_are_nested():
    a, b, c = (build_model_spec(n) for n in 'ABC')
    assert not a['spatial'] and not a['spatio_temporal']
    assert b['spatial'] and not b['spatio_temporal']
    assert c['spatial'] and c['spatio_temporal']
    assert a['covariates'] == b['covariates'] == c['covariates']


def test_unknown_model_name():
    with pytest.raises(ValueError):
        build_model_spec('D')


def test_model_formula_mentions_terms():
    formula = model_formula(build_model_spec('C'))
    assert formula.startswith('log_tb_rate ~ s(indigenous_share)')
    assert 's(longitude, latitude)' in formula
    assert 'by=year_label' in formula


def test_design_frame_layout(synthetic_data):
    design = build_design_frame(synthetic_data)
    assert list(design.columns[-5:]) == ['year_code', 'longitude', 'latitude',
                                         'year_is_2013', 'year_is_2014']
    assert set(design['year_code'].unique()) == {0.0, 1.0}
    assert (design['year_is_2013'] + design['year_is_2014'] == 1).all()


def test_design_frame_uses_given_levels(synthetic_data):
    only_2014 = synthetic_data[synthetic_data['year'] == 2014]
    design = build_design_frame(only_2014, year_levels=['2013', '2014'])
    assert (design['year_code'] == 1.0).all()
    assert (design['year_is_2013'] == 0.0).all()


# =============================================================================
# FITTING
# =============================================================================

def test_model_a_fit_is_finite(fitted_models):
    fit_a = fitted_models[0]
    assert fit_a['name'] == 'A'
    assert np.isfinite(fit_a['aic'])
    assert np.isfinite(fit_a['loglik'])
    assert 0 < fit_a['edof'] < fit_a['n_obs']


def test_rows_with_missing_covariate_are_excluded(fitted_models, synthetic_data):
    n_missing = int(synthetic_data['healthcare_timeliness'].isna().sum())
    for fit in fitted_models:
        assert fit['n_obs'] == len(synthetic_data) - n_missing
        assert fit['residuals'].loc[[5, 17, 90]].isna().all()
        assert fit['residuals'].drop([5, 17, 90]).notna().all()


def test_missing_coordinates_only_affect_spatial_models(synthetic_data):
    df = synthetic_data.copy()
    df.loc[[0, 1], 'longitude'] = np.nan
    fit_a = _fit(df, 'A')
    fit_b = _fit(df, 'B')
    assert fit_b['n_obs'] == fit_a['n_obs'] - 2
    assert fit_a['residuals'].loc[[0, 1]].notna().all()
    assert fit_b['residuals'].loc[[0, 1]].isna().all()


def test_residuals_are_observed_minus_fitted(fitted_models, synthetic_data):
    fit = fitted_models[1]
    rows = fit['row_index']
    np.testing.assert_allclose(
        fit['residuals'].loc[rows],
        synthetic_data.loc[rows, 'log_tb_rate'] - fit['fitted'].loc[rows],
    )


def test_term_table_layout(fitted_models):
    table_a, table_b, table_c = (fit['term_table'] for fit in fitted_models)
    assert list(table_a['kind']).count('smooth') == 8
    assert table_a['term'].iloc[-1] == 'intercept'
    assert 's(longitude,latitude)' in table_b['term'].tolist()
    assert (table_c['kind'] == 'spatio_temporal').sum() == 2
    assert table_c['p_value'].between(0, 1).all()
    assert (table_c['edf'] >= 0).all()


def test_poverty_effect_is_detected(fitted_models):
    assert 's(poverty_rate)' in significant_terms(fitted_models[0])


def test_predict_matches_fitted(fitted_models, synthetic_data):
    fit = fitted_models[2]
    rows = fit['row_index']
    pred = predict_gam(fit, synthetic_data.loc[rows])
    np.testing.assert_allclose(pred, fit['fitted'].loc[rows])


def test_summary_text(fitted_models):
    text = summarize_gam(fitted_models[0])
    assert 'AIC' in text
    assert 's(poverty_rate)' in text


def test_fitting_is_deterministic(synthetic_data, fitted_models):
    refit = _fit(synthetic_data, 'A')
    assert refit['aic'] == pytest.approx(fitted_models[0]['aic'])
    assert refit['lam'] == fitted_models[0]['lam']


def test_converged_fit_is_flagged(fitted_models):
    assert all(fit['converged'] for fit in fitted_models)
    assert all(pirls_converged(fit['gam']) for fit in fitted_models)


def test_non_convergence_is_reported(synthetic_data, caplog):
    with caplog.at_level(logging.WARNING, logger='gam_module'):
        fit = fit_gam(synthetic_data, build_model_spec('A'), n_splines=TEST_N_SPLINES,
                      lam_grid=TEST_LAM_GRID, max_iter=1)

    assert fit['converged'] is False
    assert np.isfinite(fit['aic'])
    assert any('did not converge' in msg for msg in fit['warnings'])
    assert any('did not converge' in rec.getMessage() for rec in caplog.records)
    assert 'WARNING: fit did not converge cleanly' in summarize_gam(fit)


def test_smoothing_parameter_per_term(fitted_models):
    fit_a = fitted_models[0]
    labels = fit_a['term_table']['term'].tolist()[:-1]
    lam = dict(zip(labels, fit_a['lam']))

    assert len(fit_a['lam']) == len(labels) == 9
    smooth_lams = [lam[f"s({col})"] for col in COVARIATES]
    assert len(set(smooth_lams)) > 1
    # curved illiteracy effect gets a smaller penalty than the flattest covariate
    assert lam['s(illiteracy_rate)'] < max(smooth_lams)
    assert all(v in TEST_LAM_GRID for v in smooth_lams)


def test_year_factor_is_not_smoothed(fitted_models):
    for fit in fitted_models:
        labels = fit['term_table']['term'].tolist()[:-1]
        assert dict(zip(labels, fit['lam']))['year_label'] == FACTOR_LAM


def test_build_terms_rejects_wrong_lam_count(synthetic_data):
    spec = build_model_spec('B')
    design = build_design_frame(synthetic_data)
    with pytest.raises(ValueError):
        build_terms(spec, list(design.columns), ['2013', '2014'], lams=[1.0, 2.0])


# =============================================================================
# COMPARISON AND SELECTION
# =============================================================================

def test_likelihood_ratio_test_values():
    small = _fake_fit('A', 100.0, loglik=-50.0, edof=10.0)
    large = _fake_fit('B', 90.0, loglik=-42.0, edof=13.5)
    result = likelihood_ratio_test(small, large)
    assert result['statistic'] == pytest.approx(16.0)
    assert result['df'] == pytest.approx(3.5)
    assert result['p_value'] == pytest.approx(stats.chi2.sf(16.0, 3.5))
    assert result['significant']


def test_likelihood_ratio_test_not_significant():
    small = _fake_fit('B', 100.0, loglik=-50.0, edof=10.0)
    large = _fake_fit('C', 101.0, loglik=-49.5, edof=12.0)
    assert not likelihood_ratio_test(small, large)['significant']


def test_likelihood_ratio_test_non_positive_df(caplog):
    small = _fake_fit('A', 100.0, loglik=-50.0, edof=10.0)
    large = _fake_fit('B', 100.0, loglik=-49.0, edof=9.0)
    result = likelihood_ratio_test(small, large)
    assert np.isnan(result['p_value'])
    assert not result['significant']
    assert "non-positive df" in caplog.text


def test_likelihood_ratio_test_warns_on_different_samples(caplog):
    small = _fake_fit('A', 100.0, loglik=-50.0, edof=10.0, n_obs=100)
    large = _fake_fit('B', 90.0, loglik=-45.0, edof=12.0, n_obs=98)
    likelihood_ratio_test(small, large)
    assert "different samples" in caplog.text


def test_select_minimum_aic():
    fits = [_fake_fit('A', 120.0), _fake_fit('B', 95.5), _fake_fit('C', 101.0)]
    selected = select_best_model(fits)
    assert selected.label == 'B'
    assert selected.has_spatial and not selected.has_spatio_temporal
    assert selected.aic_table.loc[selected.aic_table['selected'], 'model'].tolist() == ['B']
    assert selected.aic_table['delta_aic'].min() == 0.0


def test_select_tie_goes_to_simpler_model():
    fits = [_fake_fit('A', 100.0), _fake_fit('B', 90.0), _fake_fit('C', 90.0)]
    assert select_best_model(fits).label == 'B'
    fits = [_fake_fit('A', 90.0), _fake_fit('B', 90.0), _fake_fit('C', 90.0)]
    assert select_best_model(fits).label == 'A'


def test_select_requires_fits():
    with pytest.raises(ValueError):
        select_best_model([])


def test_significant_terms_filters_kind_and_alpha():
    fit = {'term_table': pd.DataFrame({
        'term': ['s(poverty_rate)', 's(illiteracy_rate)', 'year_label', 's(longitude,latitude)'],
        'kind': ['smooth', 'smooth', 'parametric', 'spatial'],
        'edf': [3.0, 1.0, 1.0, 10.0],
        'p_value': [0.001, 0.2, 0.0001, 0.0001],
    })}
    assert significant_terms(fit) == ['s(poverty_rate)']
    assert significant_terms(fit, kinds=('smooth', 'spatial')) == ['s(poverty_rate)',
                                                                    's(longitude,latitude)']


def test_convert_to_json_serializable():
    obj = {
        'a': np.int64(3),
        'b': np.float32(1.5),
        'c': np.array([1, 2]),
        'd': np.nan,
        'e': np.bool_(True),
        'f': pd.DataFrame({'x': [1.0]}),
        np.int64(7): (np.float64(2.0),),
    }
    out = convert_to_json_serializable(obj)
    assert out == {'a': 3, 'b': 1.5, 'c': [1, 2], 'd': None, 'e': True,
                   'f': [{'x': 1.0}], 7: [2.0]}
    json.dumps(out)
