"""
Maps and Charts

This module draws the figures written next to the tabular outputs. All maps
are drawn in the region set's own CRS with GeoPandas, so no basemap download
is needed and projected region layers are shown undistorted.

Figure Types:
1. Cleaning Map
   - Region outlines
   - Points inside the boundary
   - Snapped points, each joined to its original position by a thin line
   - Points left outside (mark policy) in a separate colour

2. Region Choropleth
   - Regions filled by n_occurrences or n_species
   - Regions without occurrences drawn in light grey

3. Region Count Bar Chart
   - Occurrences per region, largest first, species counts annotated

Output formats: PNG (dpi applied), PDF or SVG (vector), chosen by suffix.

Example Usage:
    >>> from gbifregions.visualization import plot_region_choropleth
    >>> plot_region_choropleth(enriched, "results/plots/choropleth_n_species.png",
    ...                        column="n_species")
"""

from typing import Optional, Tuple, Union
from pathlib import Path
import logging

import pandas as pd
import geopandas as gpd
import matplotlib.pyplot as plt
from matplotlib.collections import LineCollection
import seaborn as sns

from .cleaning import LOCATION_TYPE_COL, INSIDE, SNAPPED, OUTSIDE, X_COL, Y_COL
from .aggregation import N_OCCURRENCES_COL, N_SPECIES_COL
from .regions import REGION_ID_COL, REGION_NAME_COL

logger = logging.getLogger(__name__)

LOCATION_COLORS = {
    INSIDE: '#5AB4AC',
    SNAPPED: '#D95F02',
    OUTSIDE: '#9D7ABE',
}


def _save_figure(fig, out: Path, dpi: int) -> None:
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix.lower() == ".png":
        fig.savefig(out, dpi=dpi, bbox_inches="tight")
    else:
        fig.savefig(out, bbox_inches="tight")
    plt.close(fig)
    logger.debug(f"Saved figure: {out}")


def plot_cleaning_map(
    regions: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    output_path: Union[str, Path],
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
    source_crs: str = "EPSG:4326",
    figsize: Tuple[float, float] = (10, 8),
    dpi: int = 300,
) -> None:
    """
    Map region outlines with cleaned points coloured by location type.

    Parameters
    ----------
    regions : gpd.GeoDataFrame
        Region polygons
    points : gpd.GeoDataFrame
        Cleaned points (``clean_occurrences`` output)
    output_path : str or Path
        Output figure path
    lon_col, lat_col : str
        Original coordinate columns, used to draw snapping offsets
    source_crs : str
        CRS of the original coordinate columns
    figsize : tuple
        Figure size in inches (default: 10x8)
    dpi : int
        Resolution for PNG output (default: 300)
    """
    out = Path(output_path)

    fig, ax = plt.subplots(figsize=figsize)
    regions.boundary.plot(ax=ax, color="#444444", linewidth=0.5, zorder=1)

    if len(points) and LOCATION_TYPE_COL in points.columns:
        snapped = points[points[LOCATION_TYPE_COL] == SNAPPED]
        if len(snapped) and {lon_col, lat_col} <= set(snapped.columns):
            origins = gpd.GeoSeries(
                gpd.points_from_xy(snapped[lon_col], snapped[lat_col]),
                crs=source_crs,
            ).to_crs(points.crs)
            segments = [
                [(o.x, o.y), (x, y)]
                for o, x, y in zip(origins, snapped[X_COL], snapped[Y_COL])
            ]
            ax.add_collection(
                LineCollection(segments, colors=LOCATION_COLORS[SNAPPED],
                               linewidths=0.4, alpha=0.6, zorder=2)
            )

        for location_type, color in LOCATION_COLORS.items():
            subset = points[points[LOCATION_TYPE_COL] == location_type]
            if len(subset) == 0:
                continue
            subset.plot(
                ax=ax, color=color, markersize=8, edgecolor="black",
                linewidth=0.1, label=f"{location_type} ({len(subset)})", zorder=3,
            )
        ax.legend(title="Location", loc="lower left", bbox_to_anchor=(1.02, 0.0), frameon=False)
    else:
        logger.warning(f"No cleaned points to draw on {out.name}")

    ax.set_title("Cleaned occurrences")
    ax.set_aspect("equal")
    plt.tight_layout()
    _save_figure(fig, out, dpi)


def plot_region_choropleth(
    enriched_regions: gpd.GeoDataFrame,
    output_path: Union[str, Path],
    column: str = N_OCCURRENCES_COL,
    cmap: str = "viridis",
    figsize: Tuple[float, float] = (10, 8),
    dpi: int = 300,
) -> None:
    """
    Fill regions by a count column.

    Parameters
    ----------
    enriched_regions : gpd.GeoDataFrame
        Output of ``aggregation.enrich_regions``
    output_path : str or Path
        Output figure path
    column : str
        'n_occurrences' or 'n_species'
    cmap : str
        Matplotlib colormap name
    """
    if column not in enriched_regions.columns:
        raise ValueError(f"Column '{column}' not found in region table")

    out = Path(output_path)
    fig, ax = plt.subplots(figsize=figsize)

    populated = enriched_regions[enriched_regions[column] > 0]
    empty = enriched_regions[enriched_regions[column] == 0]

    if len(empty):
        empty.plot(ax=ax, color="#eeeeee", edgecolor="#999999", linewidth=0.3)
    if len(populated):
        populated.plot(
            ax=ax, column=column, cmap=cmap, edgecolor="#444444", linewidth=0.3,
            legend=True, legend_kwds={'label': column.replace('_', ' '), 'shrink': 0.6},
        )
    else:
        logger.warning(f"All regions have zero {column}; drawing outlines only")

    ax.set_title(column.replace('_', ' ').capitalize() + " per region")
    ax.set_aspect("equal")
    plt.tight_layout()
    _save_figure(fig, out, dpi)


def plot_region_counts(
    summary: pd.DataFrame,
    output_path: Union[str, Path],
    top_n: Optional[int] = 30,
    figsize: Tuple[float, float] = (10, 6),
    dpi: int = 300,
) -> None:
    """
    Bar chart of occurrences per region, largest first.

    Only the ``top_n`` regions are shown when there are more.
    """
    for c in (REGION_ID_COL, REGION_NAME_COL, N_OCCURRENCES_COL, N_SPECIES_COL):
        if c not in summary.columns:
            raise ValueError(f"Column '{c}' not found in summary")

    out = Path(output_path)
    d = summary.sort_values(N_OCCURRENCES_COL, ascending=False, kind='mergesort')
    if top_n is not None and len(d) > top_n:
        logger.info(f"Showing the {top_n} regions with most occurrences out of {len(d)}")
        d = d.head(top_n)
    labels = d[REGION_NAME_COL].astype(str)
    if labels.duplicated().any():
        labels = labels + " (" + d[REGION_ID_COL].astype(str) + ")"
    d = d.assign(_label=labels)

    fig, ax = plt.subplots(figsize=figsize)
    sns.barplot(data=d, x='_label', y=N_OCCURRENCES_COL, color='#5AB4AC', ax=ax)

    for i, (n_occ, n_sp) in enumerate(zip(d[N_OCCURRENCES_COL], d[N_SPECIES_COL])):
        ax.text(i, n_occ, f"{n_sp} spp.", ha="center", va="bottom", fontsize=7)

    ax.set_xlabel("Region")
    ax.set_ylabel("Occurrences")
    ax.set_ylim(0, max(1, d[N_OCCURRENCES_COL].max() if len(d) else 0) * 1.15)
    plt.setp(ax.get_xticklabels(), rotation=45, ha="right")
    plt.tight_layout()
    _save_figure(fig, out, dpi)
