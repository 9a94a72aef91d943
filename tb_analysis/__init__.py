"""
Spatio-temporal GAM analysis of tuberculosis incidence in Brazilian
microregions (2013-2014).

Phases:
- phase0_data_prep: load the observation table, derive TB rates
- phase1_exploration: descriptive maps, distributions, covariate correlation
- phase2_gam_models: Models A/B/C, AIC and likelihood-ratio comparison
- phase3_risk_analysis: high-risk regions, temporal summary
- phase4_outputs: diagnostics, spatial surface, conclusions, saved results

run_pipeline.main() runs them in order.
"""

__version__ = '1.0.0'
