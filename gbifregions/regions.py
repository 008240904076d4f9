"""
Region Polygon Sets

Loading and validation of the reference polygons that occurrences are cleaned
against and counted into (administrative units, ecoregions, marine areas,
management zones, ...).

A loaded region set is a GeoDataFrame with standardized ``region_id`` and
``region_name`` columns, a CRS, and the file's row order preserved. That
order is what the aggregator uses to break ties on shared borders and to
order the region summary.

Region problems are configuration errors and fatal: an empty set, a missing
CRS, missing geometry, or null or duplicate identifiers raise
``RegionDataError``.

Example Usage:
    >>> from gbifregions.regions import load_regions, unify_regions
    >>> regions = load_regions("data/ecoregions.gpkg", id_col="ECO_ID")
    >>> boundary = unify_regions(regions)
"""

from typing import Iterable, List, Optional, Union
from pathlib import Path
import logging

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely
from shapely.geometry.base import BaseGeometry

from .geometry import BoundingBox, GeometryBackend, get_default_backend

logger = logging.getLogger(__name__)

REGION_ID_COL = 'region_id'
REGION_NAME_COL = 'region_name'

# Common identifier / name columns in published region layers
ID_COLUMN_CANDIDATES = [
    'region_id', 'id', 'ID', 'Id', 'fid', 'FID', 'GEOID', 'geoid', 'CODE',
    'code', 'ISO_A3', 'iso_a3', 'GID_0', 'GID_1', 'OBJECTID',
]
NAME_COLUMN_CANDIDATES = [
    'region_name', 'name', 'NAME', 'Name', 'NAME_EN', 'name_en', 'REGION',
    'region', 'ECO_NAME', 'NAME_0', 'NAME_1', 'label', 'LABEL',
]

# Bounding boxes are densified before reprojection so curved edges survive
BBOX_SEGMENT_DEGREES = 0.5


class RegionDataError(ValueError):
    """Raised when a region polygon set is missing, empty or inconsistent."""
    pass


# ============================================================================
# Loading
# ============================================================================

def _detect_column(columns: Iterable[str], candidates: List[str]) -> Optional[str]:
    columns = list(columns)
    for col in candidates:
        if col in columns:
            return col
    return None


def load_regions(
    path: Union[str, Path],
    id_col: Optional[str] = None,
    name_col: Optional[str] = None,
    layer: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Load a region polygon set from any vector format GeoPandas can read.

    Parameters
    ----------
    path : str or Path
        Vector file (GeoPackage, shapefile, GeoJSON, ...)
    id_col : str, optional
        Identifier column. If None, a common identifier column is detected;
        if none is found the row position is used
    name_col : str, optional
        Name column. If None, a common name column is detected; if none is
        found the identifier doubles as the name
    layer : str, optional
        Layer to read from multi-layer sources

    Returns
    -------
    gpd.GeoDataFrame
        Regions with ``region_id``, ``region_name`` and ``geometry`` columns
        (other attributes are kept), in file order, in the file's CRS

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    RegionDataError
        If the file cannot be read, is empty, has no CRS, lacks a requested
        column, or has duplicate identifiers

    Examples
    --------
    >>> regions = load_regions("provinces.geojson", name_col="NAME_1")
    >>> regions[['region_id', 'region_name']].head()
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Region polygon file not found: {path}")

    logger.info(f"Loading region polygons from: {path}")

    try:
        read_kwargs = {'layer': layer} if layer is not None else {}
        regions = gpd.read_file(path, **read_kwargs)
    except Exception as e:
        raise RegionDataError(f"Failed to read region polygons from {path}: {e}") from e

    if len(regions) == 0:
        raise RegionDataError(f"Region polygon file is empty: {path}")

    if regions.crs is None:
        raise RegionDataError(
            f"Region polygon file has no CRS: {path}. "
            "Assign one (e.g. with ogr2ogr -a_srs) before running."
        )

    for requested, label in ((id_col, 'identifier'), (name_col, 'name')):
        if requested is not None and requested not in regions.columns:
            raise RegionDataError(
                f"Region {label} column '{requested}' not found. "
                f"Available columns: {[c for c in regions.columns if c != 'geometry']}"
            )

    if id_col is None:
        id_col = _detect_column(regions.columns, ID_COLUMN_CANDIDATES)
    if name_col is None:
        name_col = _detect_column(
            [c for c in regions.columns if c != id_col], NAME_COLUMN_CANDIDATES
        )

    regions = regions.reset_index(drop=True)

    if id_col is None:
        logger.warning("No region identifier column found, using row position")
        regions[REGION_ID_COL] = np.arange(len(regions))
    elif id_col != REGION_ID_COL:
        regions = regions.drop(columns=[REGION_ID_COL], errors='ignore')
        regions[REGION_ID_COL] = regions[id_col]

    if name_col is None:
        logger.warning("No region name column found, using identifiers as names")
        regions[REGION_NAME_COL] = regions[REGION_ID_COL].astype(str)
    elif name_col != REGION_NAME_COL:
        regions = regions.drop(columns=[REGION_NAME_COL], errors='ignore')
        regions[REGION_NAME_COL] = regions[name_col]

    logger.debug(f"Region identifier column: {id_col}, name column: {name_col}")

    validate_regions(regions)

    logger.info(f"Loaded {len(regions)} regions (CRS: {regions.crs.to_string()})")
    return regions


def validate_regions(regions: gpd.GeoDataFrame) -> bool:
    """
    Check that a region set can be used for cleaning and aggregation.

    Raises
    ------
    RegionDataError
        If the set is empty, has no CRS, has missing or empty geometries,
        lacks ``region_id``, has a null identifier, or repeats an
        identifier
    """
    if regions is None or len(regions) == 0:
        raise RegionDataError("Region polygon set is empty")

    if regions.crs is None:
        raise RegionDataError("Region polygon set has no CRS")

    if REGION_ID_COL not in regions.columns:
        raise RegionDataError(f"Region polygon set has no '{REGION_ID_COL}' column")

    missing_geom = regions.geometry.isna() | regions.geometry.is_empty
    if missing_geom.any():
        bad = regions.loc[missing_geom, REGION_ID_COL].tolist()
        raise RegionDataError(f"Regions without geometry: {bad[:10]}")

    missing_id = regions[REGION_ID_COL].isna()
    if missing_id.any():
        rows = np.flatnonzero(missing_id.to_numpy()).tolist()
        raise RegionDataError(f"Regions without an identifier at rows: {rows[:10]}")

    duplicated = regions[REGION_ID_COL].duplicated(keep=False)
    if duplicated.any():
        dup_ids = pd.unique(regions.loc[duplicated, REGION_ID_COL]).tolist()
        raise RegionDataError(
            f"Duplicate region identifiers: {dup_ids[:10]}"
            + (f" (and {len(dup_ids) - 10} more)" if len(dup_ids) > 10 else "")
        )

    invalid = ~regions.geometry.is_valid
    if invalid.any():
        logger.warning(
            f"{invalid.sum()} region geometries are invalid; "
            "they will be repaired when building the unified boundary"
        )

    return True


# ============================================================================
# Derived Geometry
# ============================================================================

def unify_regions(
    regions: gpd.GeoDataFrame,
    backend: Optional[GeometryBackend] = None,
) -> BaseGeometry:
    """
    Union all region polygons into the unified boundary.

    Parameters
    ----------
    regions : gpd.GeoDataFrame
        Region polygon set
    backend : GeometryBackend, optional
        Geometry backend (default: shapely)

    Returns
    -------
    BaseGeometry
        Single Polygon or MultiPolygon in the regions' CRS
    """
    backend = backend or get_default_backend()
    try:
        boundary = backend.union(regions.geometry)
    except ValueError as e:
        raise RegionDataError(f"Could not build unified boundary: {e}") from e

    logger.debug(f"Unified boundary: {boundary.geom_type}")
    return boundary


def _polygonal_part(geom: BaseGeometry) -> BaseGeometry:
    """
    Polygon parts of a clipped geometry.

    Clipping a region that touches the box along an edge yields a
    GeometryCollection mixing polygons with lines or points; only the
    polygons are region area.
    """
    if geom is None or geom.is_empty or geom.geom_type in ('Polygon', 'MultiPolygon'):
        return geom

    polygons = []
    for part in shapely.get_parts(geom):
        if part.geom_type == 'Polygon':
            polygons.append(part)
        elif part.geom_type == 'MultiPolygon':
            polygons.extend(shapely.get_parts(part))

    if not polygons:
        return shapely.Polygon()
    if len(polygons) == 1:
        return polygons[0]
    return shapely.MultiPolygon(polygons)


def crop_regions_to_bbox(
    regions: gpd.GeoDataFrame,
    bbox: Union[BoundingBox, Iterable[float]],
    bbox_crs="EPSG:4326",
) -> gpd.GeoDataFrame:
    """
    Clip region polygons to a bounding box.

    The box is built in ``bbox_crs`` (geographic by default), densified, and
    reprojected to the regions' CRS. Regions falling completely outside the
    box are removed; region order is preserved.

    Raises
    ------
    RegionDataError
        If no region overlaps the box
    """
    if not isinstance(bbox, BoundingBox):
        bbox = BoundingBox.from_sequence(bbox)

    box_geom = shapely.segmentize(bbox.to_polygon(), BBOX_SEGMENT_DEGREES)
    box_geom = gpd.GeoSeries([box_geom], crs=bbox_crs).to_crs(regions.crs).iloc[0]

    clipped = regions.copy()
    clipped[regions.geometry.name] = gpd.GeoSeries(
        [_polygonal_part(geom) for geom in regions.geometry.intersection(box_geom)],
        index=regions.index,
        crs=regions.crs,
    )

    areas = shapely.area(clipped.geometry.to_numpy())
    keep = ~clipped.geometry.is_empty & (areas > 0)
    clipped = clipped[keep].reset_index(drop=True)

    n_removed = len(regions) - len(clipped)
    if len(clipped) == 0:
        raise RegionDataError(
            f"No region overlaps the bounding box {bbox.as_tuple()}"
        )
    if n_removed:
        logger.info(f"Cropping to bbox removed {n_removed} regions outside the box")

    return clipped
