"""
TUBERCULOSIS (TB) DATA ANALYSIS USING GAMs - BRAZIL MICROREGIONS
================================================================
Runs the full analysis in order:

[1] Load data and derive TB rates
[2] Descriptive maps and distributions
[3] Correlation of socio-economic covariates
[4] GAM Models A, B, C
[5] Model comparison (AIC, likelihood-ratio tests) and selection
[6] Diagnostics, smooth effects and spatial risk surface
[7] High-risk regions from the selected model's residuals
[8] Temporal summary
[9] Conclusions and saved results

Usage:
    python -m tb_analysis                          # default data file
    python -m tb_analysis --data tb.csv --output-dir results
    python -m tb_analysis --no-plots               # tables and models only
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence
import argparse
import logging
import sys
import warnings

from tb_analysis.config import (
    DEFAULT_DATA_FILE,
    LOG_FILE,
    OUTPUT_DIR,
    REFERENCE_YEAR,
    RISK_MAP_YEAR,
    SMOOTH_N_SPLINES,
    SPATIAL_N_SPLINES,
    ensure_dirs,
    figures_dir,
    maps_dir,
)
from tb_analysis import (
    phase0_data_prep,
    phase1_exploration,
    phase2_gam_models,
    phase3_risk_analysis,
    phase4_outputs,
)
from tb_analysis.utils import fit_summary

warnings.filterwarnings('ignore', category=FutureWarning)

logger = logging.getLogger('tb_analysis')


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Spatio-temporal GAM analysis of TB rates in Brazilian microregions')
    parser.add_argument('--data', type=str, default=str(DEFAULT_DATA_FILE),
                        help='Observation table (.csv or .parquet).')
    parser.add_argument('--output-dir', type=str, default=str(OUTPUT_DIR),
                        help='Directory for figures, maps and saved results.')
    parser.add_argument('--n-splines', type=int, default=SMOOTH_N_SPLINES,
                        help='Basis size of each covariate smooth.')
    parser.add_argument('--spatial-n-splines', type=int, default=SPATIAL_N_SPLINES,
                        help='Basis size per margin of the spatial smooths.')
    parser.add_argument('--no-plots', action='store_true',
                        help='Skip all figures and maps.')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Log file path (default: <output-dir>/tb_analysis.log).')
    return parser.parse_args(argv)


def setup_logging(log_file: Path) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S',
        handlers=[
            logging.FileHandler(log_file, mode='w'),
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )


def run_analysis(data_path, output_dir, n_splines: int = SMOOTH_N_SPLINES,
                 spatial_n_splines: int = SPATIAL_N_SPLINES,
                 make_plots: bool = True) -> Dict[str, Any]:
    """
    Execute every stage and return the intermediate results.

    Returns:
    --------
    Dict with data (augmented), correlation, fits, comparison, threshold,
    temporal summary, conclusions and results_path
    """
    output_dir = ensure_dirs(output_dir)
    fig_dir = figures_dir(output_dir)
    map_dir = maps_dir(output_dir)

    # =========================================================================
    # 1. DATA EXPLORATION AND PREPARATION
    # =========================================================================
    print("\n[1] Loading data...")
    raw = phase0_data_prep.load_dataset(data_path)
    doc = phase0_data_prep.document_dataset(raw)
    phase0_data_prep.print_data_report(doc)
    data = phase0_data_prep.derive_features(raw)

    # =========================================================================
    # 2. INITIAL DATA VISUALIZATION
    # =========================================================================
    if make_plots:
        print("\n[2] Descriptive figures...")
        phase1_exploration.plot_descriptive_maps(data, map_dir, year=REFERENCE_YEAR)
        phase1_exploration.plot_rate_distribution(data, fig_dir)
        phase1_exploration.plot_rate_by_year(data, fig_dir)

    # =========================================================================
    # 3. CORRELATION ANALYSIS OF COVARIATES
    # =========================================================================
    print("\n[3] Correlation matrix of socio-economic covariates:")
    corr = phase1_exploration.compute_correlation_matrix(data)
    print(corr.round(3).to_string())
    if make_plots:
        phase1_exploration.plot_correlation_heatmap(corr, fig_dir)

    # =========================================================================
    # 4-5. GAM MODELLING AND SELECTION
    # =========================================================================
    print("\n[4] Fitting GAMs...")
    fits = phase2_gam_models.fit_candidate_models(data, n_splines=n_splines,
                                                  spatial_n_splines=spatial_n_splines)

    print("\n[5] Model comparison...")
    comparison = phase2_gam_models.compare_models(fits)
    phase2_gam_models.print_model_comparison(comparison)
    selected = comparison['selected']

    # =========================================================================
    # 6. RESULTS VISUALIZATION
    # =========================================================================
    if make_plots:
        print("\n[6] Model figures...")
        for fit in fits:
            phase4_outputs.plot_model_diagnostics(fit, data, fig_dir)
        phase4_outputs.plot_smooth_effects(selected.fit, data, fig_dir)
        if selected.has_spatial:
            grid = phase4_outputs.spatial_prediction_grid(selected.fit, data, year=RISK_MAP_YEAR)
            phase4_outputs.plot_spatial_surface(grid, data, map_dir)

    # =========================================================================
    # 7. RESOURCE ALLOCATION ANALYSIS
    # =========================================================================
    print("\n[7] High-risk regions...")
    data, threshold = phase3_risk_analysis.flag_high_risk(data, selected)
    print(f"  Number of high-risk regions: {int(data['high_risk'].sum())}")
    print(f"  High-risk threshold (95th percentile): {threshold:.4f}")
    if make_plots:
        phase3_risk_analysis.plot_risk_map(data, map_dir, year=RISK_MAP_YEAR)

    # =========================================================================
    # 8. TEMPORAL ANALYSIS
    # =========================================================================
    print("\n[8] Temporal summary:")
    temporal = phase3_risk_analysis.temporal_summary(data)
    print(temporal.to_string(index=False))
    if make_plots:
        phase3_risk_analysis.plot_temporal_trend(temporal, fig_dir)

    # =========================================================================
    # 9. CONCLUSIONS AND SAVED RESULTS
    # =========================================================================
    conclusions = phase4_outputs.build_conclusions(selected, comparison, data, threshold)
    phase4_outputs.print_conclusions(conclusions)

    summary = {
        'created': datetime.now().isoformat(timespec='seconds'),
        'data_file': str(data_path),
        'n_rows': doc['n_rows'],
        'missing': doc['missing'].to_dict(),
        'correlation': corr.to_dict(),
        'models': [fit_summary(fit) for fit in fits],
        'aic_table': comparison['aic_table'],
        'temporal_summary': temporal,
        'conclusions': conclusions,
    }
    results_path = phase4_outputs.save_results(fits, data, output_dir, summary=summary)
    print(f"\nAnalysis complete. Results saved to {results_path}")

    return {
        'data': data,
        'correlation': corr,
        'fits': fits,
        'comparison': comparison,
        'threshold': threshold,
        'temporal_summary': temporal,
        'conclusions': conclusions,
        'results_path': results_path,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point; returns the process exit status."""
    args = parse_args(argv)
    output_dir = ensure_dirs(args.output_dir)
    setup_logging(Path(args.log_file) if args.log_file else output_dir / LOG_FILE)

    print("=" * 70)
    print("TUBERCULOSIS (TB) DATA ANALYSIS USING GAMs - BRAZIL MICROREGIONS")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Data: {args.data}")
    print(f"  Output: {output_dir}")

    try:
        run_analysis(args.data, output_dir, n_splines=args.n_splines,
                     spatial_n_splines=args.spatial_n_splines,
                     make_plots=not args.no_plots)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
