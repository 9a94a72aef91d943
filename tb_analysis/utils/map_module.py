"""
Choropleth helper for microregion-level values.

plot_map() bins one value per region into n_levels classes and draws the
regions at their centroids with geopandas. If microregion polygons are
available they can be passed as `boundaries` and are drawn underneath.
"""

from pathlib import Path
from typing import Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
import geopandas as gpd
import matplotlib.pyplot as plt

from tb_analysis.config import MAP_CMAP, MAP_N_LEVELS

logger = logging.getLogger("map_module")


def bin_values(values: Sequence[float], n_levels: int = MAP_N_LEVELS) -> pd.Categorical:
    """
    Cut values into n_levels equal-width classes.

    Missing values stay missing. Returns an ordered Categorical whose
    categories are the class intervals.
    """
    values = pd.Series(np.asarray(values, dtype=float))
    finite = values[np.isfinite(values)]
    if finite.empty:
        logger.warning("No finite values to map")
        return pd.Categorical([np.nan] * len(values))
    values = values.where(np.isfinite(values))
    return pd.cut(values, bins=n_levels, include_lowest=True).array


def plot_map(
    values: Sequence[float],
    longitude: Sequence[float],
    latitude: Sequence[float],
    n_levels: int = MAP_N_LEVELS,
    title: str = '',
    ax: Optional[plt.Axes] = None,
    boundaries: Optional[gpd.GeoDataFrame] = None,
    cmap: str = MAP_CMAP,
    highlight: Optional[Sequence[bool]] = None,
) -> Tuple[plt.Figure, plt.Axes, gpd.GeoDataFrame]:
    """
    Draw a per-region choropleth.

    Parameters:
    -----------
    values : one value per region
    longitude, latitude : region centroids, same order as values
    n_levels : number of colour classes
    boundaries : optional GeoDataFrame of region polygons (background)
    highlight : optional boolean mask; flagged regions get a dark outline

    Returns:
    --------
    fig, ax, and the GeoDataFrame that was plotted (with a 'level' column)
    """
    values = np.asarray(values, dtype=float)
    if not (len(values) == len(longitude) == len(latitude)):
        raise ValueError("values, longitude and latitude must have the same length")

    gdf = gpd.GeoDataFrame(
        {'value': values, 'level': bin_values(values, n_levels)},
        geometry=gpd.points_from_xy(longitude, latitude),
        crs='EPSG:4326',
    )
    gdf['level'] = gdf['level'].astype(str)

    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 8))
    else:
        fig = ax.figure

    if boundaries is not None:
        boundaries.to_crs(gdf.crs).plot(ax=ax, color='whitesmoke', edgecolor='lightgray', linewidth=0.3)

    plotted = gdf[gdf['value'].notna()]
    plotted.plot(column='level', categorical=True, cmap=cmap, legend=True,
                 markersize=40, ax=ax, edgecolor='gray', linewidth=0.3,
                 legend_kwds={'title': 'Value', 'loc': 'lower left', 'fontsize': 7})

    if highlight is not None:
        mask = np.asarray(highlight, dtype=bool)
        flagged = gdf[mask]
        if len(flagged):
            flagged.plot(ax=ax, facecolor='none', edgecolor='black', markersize=90, linewidth=1.2)

    ax.set_title(title)
    ax.set_xlabel('Longitude')
    ax.set_ylabel('Latitude')
    ax.set_aspect('equal')

    return fig, ax, gdf


def save_figure(fig: plt.Figure, path, formats: Sequence[str] = ('png',)) -> None:
    """Save a figure in each format (path without suffix) and close it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    for fmt in formats:
        fig.savefig(path.with_suffix(f'.{fmt}'), format=fmt, bbox_inches='tight', dpi=150)
    print(f"  Saved: {path.name}")
    plt.close(fig)
