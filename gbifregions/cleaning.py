"""
Occurrence Coordinate Cleaning

This module turns a raw occurrence table into a clean point set that can be
counted into regions. Raw GBIF coordinates are frequently missing, repeated
(the same specimen shared by several datasets), or slightly off the study area
(coastal records georeferenced into the sea, rounded coordinates that fall
just across an outer border).

Cleaning Procedure:
1. Drop records with a missing or non-numeric longitude or latitude
2. Deduplicate on the (longitude, latitude) pair, keeping the first record
   in input order
3. Crop to the bounding box (edges inclusive, evaluated on the raw
   coordinates)
4. Build point geometries in the source CRS (WGS84 by default) and reproject
   them to the region set's CRS
5. Classify each point as inside or outside the unified region boundary
   (points on the boundary count as inside)
6. Handle outside points according to the outlier policy:
   - 'snap': move to the nearest location on the boundary perimeter
   - 'mark': keep the original location, flag as outside
   - 'drop': remove

Every non-coordinate field of a record is passed through unchanged. The
original longitude/latitude columns are kept as they were read, and the
resolved coordinates (in the region set's CRS) are added as ``X`` and ``Y``.

Deduplication note: two species recorded at exactly the same coordinate
collapse to one record. Set ``dedupe_per_species`` to keep one record per
species at each coordinate instead.

Example Usage:
    >>> from gbifregions.config import CleaningConfig
    >>> from gbifregions.cleaning import clean_occurrences
    >>> result = clean_occurrences(df, regions, CleaningConfig(bbox=(-10, 35, 5, 44)))
    >>> result.points['location_type'].value_counts()
    inside     812
    snapped     37
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, Optional, Tuple, Union
import logging

import numpy as np
import pandas as pd
import geopandas as gpd
from pyproj import CRS
import shapely
from shapely.geometry.base import BaseGeometry

from .config import CleaningConfig, OUTLIER_POLICIES, SNAP_MODES
from .geometry import BoundingBox, GeometryBackend, get_default_backend
from .occurrences import validate_required_columns
from .regions import crop_regions_to_bbox, unify_regions, validate_regions

logger = logging.getLogger(__name__)

LOCATION_TYPE_COL = 'location_type'
SNAP_DISTANCE_COL = 'snap_distance'
X_COL = 'X'
Y_COL = 'Y'

INSIDE = 'inside'
SNAPPED = 'snapped'
OUTSIDE = 'outside'

# Applied when no bbox is configured and the source CRS is geographic
VALID_GEOGRAPHIC_RANGE = BoundingBox(-180.0, -90.0, 180.0, 90.0)


@dataclass
class CleaningStats:
    """Record counts for each cleaning step."""
    n_input: int = 0
    n_missing_coordinates: int = 0
    n_duplicates: int = 0
    n_outside_bbox: int = 0
    n_inside: int = 0
    n_outside: int = 0
    n_snapped: int = 0
    n_dropped_outliers: int = 0
    n_output: int = 0

    @property
    def n_classified(self) -> int:
        return self.n_input - self.n_missing_coordinates - self.n_duplicates - self.n_outside_bbox

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class CleaningResult:
    """
    Output of ``clean_occurrences``.

    Attributes
    ----------
    points : gpd.GeoDataFrame
        Cleaned records in the region set's CRS, with ``X``, ``Y``,
        ``location_type`` and ``snap_distance`` columns added
    stats : CleaningStats
        Record counts per step
    boundary : BaseGeometry, optional
        Unified boundary the points were classified against
    regions : gpd.GeoDataFrame, optional
        Region polygons the boundary was built from (after bbox cropping)
    """
    points: gpd.GeoDataFrame
    stats: CleaningStats = field(default_factory=CleaningStats)
    boundary: Optional[BaseGeometry] = None
    regions: Optional[gpd.GeoDataFrame] = None


# ============================================================================
# Record Filters
# ============================================================================

def filter_missing_coordinates(
    df: pd.DataFrame,
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
) -> Tuple[pd.DataFrame, int]:
    """
    Drop records where either coordinate is missing or not a finite number.

    Returns
    -------
    Tuple[pd.DataFrame, int]
        Remaining records (coordinates as float) and the number dropped
    """
    df_copy = df.copy()
    for col in (lon_col, lat_col):
        df_copy[col] = pd.to_numeric(df_copy[col], errors='coerce')

    coords = df_copy[[lon_col, lat_col]].to_numpy(dtype=float)
    has_coords = np.isfinite(coords).all(axis=1)
    n_dropped = int((~has_coords).sum())

    if n_dropped:
        logger.info(f"Dropped {n_dropped} records with missing coordinates")

    return df_copy[has_coords], n_dropped


def deduplicate_coordinates(
    df: pd.DataFrame,
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
    species_col: Optional[str] = None,
) -> Tuple[pd.DataFrame, int]:
    """
    Keep the first record (in input order) for each coordinate pair.

    Parameters
    ----------
    df : pd.DataFrame
        Records with complete coordinates
    lon_col, lat_col : str
        Coordinate columns
    species_col : str, optional
        If given, deduplicate on (species, lon, lat) so that different
        species sharing a coordinate are all kept

    Returns
    -------
    Tuple[pd.DataFrame, int]
        Deduplicated records and the number dropped

    Examples
    --------
    >>> df = pd.DataFrame({'species': ['a', 'b'], 'lon': [1.0, 1.0], 'lat': [2.0, 2.0]})
    >>> deduplicate_coordinates(df, 'lon', 'lat')[1]
    1
    """
    subset = [lon_col, lat_col]
    if species_col is not None:
        subset = [species_col] + subset

    deduped = df.drop_duplicates(subset=subset, keep='first')
    n_dropped = len(df) - len(deduped)

    if n_dropped:
        logger.info(f"Dropped {n_dropped} records with duplicate coordinates")

    return deduped, n_dropped


def crop_to_bbox(
    df: pd.DataFrame,
    bbox: Union[BoundingBox, Iterable[float]],
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
) -> Tuple[pd.DataFrame, int]:
    """
    Keep records inside a bounding box; points on the edges are kept.

    Returns
    -------
    Tuple[pd.DataFrame, int]
        Records inside the box and the number dropped
    """
    if not isinstance(bbox, BoundingBox):
        bbox = BoundingBox.from_sequence(bbox)

    in_box = (
        df[lon_col].between(bbox.min_lon, bbox.max_lon, inclusive='both')
        & df[lat_col].between(bbox.min_lat, bbox.max_lat, inclusive='both')
    )
    n_dropped = int((~in_box).sum())

    if n_dropped:
        logger.info(f"Dropped {n_dropped} records outside bbox {bbox.as_tuple()}")

    return df[in_box], n_dropped


# ============================================================================
# Geometry Steps
# ============================================================================

def create_points_geodataframe(
    df: pd.DataFrame,
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
    crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """
    Create a GeoDataFrame of point geometries from longitude/latitude columns.

    Parameters
    ----------
    df : pd.DataFrame
        Records with complete numeric coordinates
    lon_col : str
        Longitude column (x)
    lat_col : str
        Latitude column (y)
    crs : str
        CRS of the coordinates (default: WGS84)

    Returns
    -------
    gpd.GeoDataFrame
        Input records with a point geometry column

    Raises
    ------
    ValueError
        If a coordinate column is missing
    """
    if lat_col not in df.columns:
        raise ValueError(f"Latitude column '{lat_col}' not found in DataFrame")
    if lon_col not in df.columns:
        raise ValueError(f"Longitude column '{lon_col}' not found in DataFrame")

    geometry = gpd.points_from_xy(
        df[lon_col].astype(float), df[lat_col].astype(float), crs=crs
    )
    logger.debug(f"Created {len(df)} point geometries in {crs}")
    return gpd.GeoDataFrame(df.copy(), geometry=geometry, crs=crs)


def reproject_points(
    points: gpd.GeoDataFrame,
    target_crs,
    backend: Optional[GeometryBackend] = None,
) -> gpd.GeoDataFrame:
    """Reproject points to ``target_crs``; a no-op when the CRS already matches."""
    backend = backend or get_default_backend()
    if points.crs != target_crs:
        logger.info(f"Reprojecting {len(points)} points to {CRS.from_user_input(target_crs).to_string()}")
    return backend.transform(points, target_crs)


def classify_points(
    points: gpd.GeoDataFrame,
    boundary: BaseGeometry,
    backend: Optional[GeometryBackend] = None,
) -> pd.Series:
    """
    Flag points that intersect the unified boundary.

    Intersection rather than containment is used, so points lying exactly on
    a region border are inside.

    Returns
    -------
    pd.Series
        Boolean Series aligned to ``points``; True means inside
    """
    backend = backend or get_default_backend()
    inside = backend.intersects(points.geometry, boundary)
    return pd.Series(inside, index=points.index, name='inside')


def snap_to_boundary(
    points: gpd.GeoDataFrame,
    boundary: BaseGeometry,
    backend: Optional[GeometryBackend] = None,
    mode: str = 'edge',
) -> gpd.GeoSeries:
    """
    Move points to the nearest location on the boundary perimeter.

    Parameters
    ----------
    points : gpd.GeoDataFrame
        Points to move, in the boundary's CRS
    boundary : BaseGeometry
        Unified region boundary
    backend : GeometryBackend, optional
        Geometry backend (default: shapely)
    mode : str
        'edge' for the nearest point anywhere on the perimeter, 'vertex' for
        the nearest boundary vertex

    Returns
    -------
    gpd.GeoSeries
        Corrected points aligned to ``points``

    Notes
    -----
    Ties between equally close boundary locations are resolved by boundary
    traversal order, so repeated runs give identical coordinates.
    """
    if mode not in SNAP_MODES:
        raise ValueError(f"Invalid snap mode '{mode}'. Must be one of: {list(SNAP_MODES)}")

    backend = backend or get_default_backend()

    if mode == 'vertex':
        vertices = backend.cast_to_points(boundary)
        snapped = [backend.nearest_vertex(pt, vertices) for pt in points.geometry]
    else:
        parts = backend.boundary_parts(boundary)
        snapped = [backend.nearest_boundary_point(pt, parts) for pt in points.geometry]

    return gpd.GeoSeries(snapped, index=points.index, crs=points.crs)


# ============================================================================
# Full Procedure
# ============================================================================

def _resolve_bbox(cfg: CleaningConfig) -> Optional[BoundingBox]:
    if cfg.bbox is not None:
        return BoundingBox.from_sequence(cfg.bbox)
    if CRS.from_user_input(cfg.source_crs).is_geographic:
        return VALID_GEOGRAPHIC_RANGE
    return None


def clean_occurrences(
    df: pd.DataFrame,
    regions: gpd.GeoDataFrame,
    cfg: Optional[CleaningConfig] = None,
    backend: Optional[GeometryBackend] = None,
) -> CleaningResult:
    """
    Run the full coordinate cleaning procedure.

    Parameters
    ----------
    df : pd.DataFrame
        Raw occurrence records
    regions : gpd.GeoDataFrame
        Region polygon set (see ``regions.load_regions``)
    cfg : CleaningConfig, optional
        Column names, bbox and outlier handling (default: CleaningConfig())
    backend : GeometryBackend, optional
        Geometry backend (default: shapely)

    Returns
    -------
    CleaningResult
        Cleaned points in the regions' CRS plus step counts

    Raises
    ------
    RegionDataError
        If the region set is empty, has no CRS, or nothing is left after
        cropping it to the bbox
    OccurrenceDataError
        If a coordinate column is missing

    Notes
    -----
    An occurrence table with no usable records yields an empty result, not
    an error.
    """
    cfg = cfg or CleaningConfig()
    backend = backend or get_default_backend()
    lon_col, lat_col = cfg.lon_col, cfg.lat_col

    if cfg.outlier_policy not in OUTLIER_POLICIES:
        raise ValueError(f"Invalid outlier policy '{cfg.outlier_policy}'")

    validate_regions(regions)
    required = [lon_col, lat_col] + ([cfg.species_col] if cfg.dedupe_per_species else [])
    validate_required_columns(df, required)

    stats = CleaningStats(n_input=len(df))
    logger.info(f"Cleaning {stats.n_input} occurrence records (policy: {cfg.outlier_policy})")

    # Record filters, all on the raw coordinates
    records, stats.n_missing_coordinates = filter_missing_coordinates(df, lon_col, lat_col)
    records, stats.n_duplicates = deduplicate_coordinates(
        records, lon_col, lat_col,
        species_col=cfg.species_col if cfg.dedupe_per_species else None,
    )

    bbox = _resolve_bbox(cfg)
    if bbox is not None:
        records, stats.n_outside_bbox = crop_to_bbox(records, bbox, lon_col, lat_col)

    # Reference geometry
    if cfg.bbox is not None and cfg.crop_regions:
        regions = crop_regions_to_bbox(regions, bbox, bbox_crs=cfg.source_crs)
    boundary = unify_regions(regions, backend)

    # Point geometry in the regions' CRS
    points = create_points_geodataframe(records, lon_col, lat_col, crs=cfg.source_crs)
    points = reproject_points(points, regions.crs, backend)

    inside = classify_points(points, boundary, backend)
    stats.n_inside = int(inside.sum())
    stats.n_outside = int((~inside).sum())

    logger.info(
        f"Classification complete: {stats.n_inside} inside, "
        f"{stats.n_outside} outside the region boundary"
    )

    points[LOCATION_TYPE_COL] = np.where(inside, INSIDE, OUTSIDE)
    points[SNAP_DISTANCE_COL] = np.where(inside, 0.0, np.nan)

    outside = ~inside
    if cfg.outlier_policy == 'drop':
        if stats.n_outside:
            logger.info(f"Dropping {stats.n_outside} points outside the region boundary")
        points = points[inside]
        stats.n_dropped_outliers = stats.n_outside

    elif cfg.outlier_policy == 'snap' and stats.n_outside:
        logger.info(
            f"Snapping {stats.n_outside} points to the nearest boundary "
            f"{'vertex' if cfg.snap_mode == 'vertex' else 'location'}..."
        )
        original = points.geometry[outside]
        corrected = snap_to_boundary(points[outside], boundary, backend, mode=cfg.snap_mode)

        points.loc[outside, SNAP_DISTANCE_COL] = shapely.distance(
            original.to_numpy(), corrected.to_numpy()
        )
        geometry = points.geometry.copy()
        geometry.loc[outside] = corrected
        points = points.set_geometry(geometry)
        points.loc[outside, LOCATION_TYPE_COL] = SNAPPED
        stats.n_snapped = stats.n_outside

        logger.info(
            f"Snapping complete (max distance {points[SNAP_DISTANCE_COL].max():.6g} "
            "CRS units)"
        )

    elif cfg.outlier_policy == 'mark' and stats.n_outside:
        logger.warning(
            f"{stats.n_outside} points outside the region boundary kept with "
            f"{LOCATION_TYPE_COL}='{OUTSIDE}'"
        )

    points = points.reset_index(drop=True)
    points[X_COL] = points.geometry.x
    points[Y_COL] = points.geometry.y

    stats.n_output = len(points)
    _log_cleaning_summary(stats)

    return CleaningResult(points=points, stats=stats, boundary=boundary, regions=regions)


def _log_cleaning_summary(stats: CleaningStats) -> None:
    logger.info("Cleaning summary:")
    for key, value in stats.to_dict().items():
        logger.info(f"  {key}: {value}")

    if stats.n_input and stats.n_output == 0:
        logger.warning("No occurrence records survived cleaning")
