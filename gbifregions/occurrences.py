"""
Occurrence Table Parsing

This module reads occurrence tables downloaded from GBIF (or any delimited
export with a species column and decimal coordinates) and validates the
fields the cleaning procedure relies on.

Key Responsibilities:
1. Parse delimited occurrence tables:
   - species: Species name (REQUIRED)
   - decimalLongitude / decimalLatitude: Coordinates (REQUIRED)
   - All other columns (gbifID, basisOfRecord, eventDate, ...) are passed
     through untouched
2. Coerce coordinates to numbers; unparsable values become missing so they
   are counted by the cleaner instead of aborting the run
3. Reload the cleaned point table written by the cleaner for the
   aggregation step

Input errors (missing file, unreadable content, missing required column) are
fatal and raised immediately.

Example Usage:
    >>> from gbifregions.occurrences import read_occurrences
    >>> df = read_occurrences("0012345-240101000000000.csv")
    >>> print(df[['species', 'decimalLongitude', 'decimalLatitude']].head())
"""

from typing import Dict, List, Optional, Any, Union
from pathlib import Path
import logging

import pandas as pd
import geopandas as gpd

from .utils import infer_separator

logger = logging.getLogger(__name__)


class OccurrenceDataError(ValueError):
    """Raised when an occurrence table cannot be read or lacks required fields."""
    pass


# ============================================================================
# Occurrence Table Parsing
# ============================================================================

def read_occurrences(
    path: Union[str, Path],
    species_col: str = 'species',
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
    sep: Optional[str] = None,
    encoding: str = 'utf-8',
) -> pd.DataFrame:
    """
    Read an occurrence table and validate required columns.

    Parameters
    ----------
    path : Union[str, Path]
        Path to the delimited occurrence table
    species_col : str
        Species name column (default: 'species')
    lon_col : str
        Longitude column (default: 'decimalLongitude')
    lat_col : str
        Latitude column (default: 'decimalLatitude')
    sep : str, optional
        Field separator. If None, inferred from the file suffix
    encoding : str
        File encoding (default: 'utf-8', falls back to 'latin-1' if needed)

    Returns
    -------
    pd.DataFrame
        Occurrence records in input order. Coordinate columns are float;
        every other column is read as text.

    Raises
    ------
    FileNotFoundError
        If the file doesn't exist
    OccurrenceDataError
        If the file is empty, unparsable, or missing a required column

    Examples
    --------
    >>> df = read_occurrences("occurrences.tsv")
    >>> df.dtypes['decimalLatitude']
    dtype('float64')
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Occurrence table not found: {path}")

    if sep is None:
        sep = infer_separator(path)

    logger.info(f"Reading occurrence table: {path}")

    read_kwargs = dict(sep=sep, dtype=str, keep_default_na=True, low_memory=False)
    try:
        try:
            df = pd.read_csv(path, encoding=encoding, **read_kwargs)
        except UnicodeDecodeError:
            logger.warning(f"{encoding} decoding failed, trying latin-1")
            df = pd.read_csv(path, encoding='latin-1', **read_kwargs)
    except pd.errors.EmptyDataError as e:
        raise OccurrenceDataError(f"Occurrence table is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise OccurrenceDataError(f"Failed to parse occurrence table {path}: {e}") from e

    logger.info(f"Read {len(df)} rows and {len(df.columns)} columns")

    validate_required_columns(df, [species_col, lon_col, lat_col])

    for col in (lon_col, lat_col):
        df[col] = pd.to_numeric(df[col], errors='coerce')

    _log_data_quality(df, species_col, lon_col, lat_col)

    return df


def validate_required_columns(
    df: pd.DataFrame,
    required_columns: List[str]
) -> bool:
    """
    Validate that DataFrame contains required columns.

    Raises
    ------
    OccurrenceDataError
        If any required columns are missing
    """
    missing_columns = [col for col in required_columns if col not in df.columns]

    if missing_columns:
        available_cols = sorted(df.columns.tolist())
        logger.error(
            f"Missing required columns: {missing_columns}\n"
            f"Available columns: {available_cols[:20]}"
        )
        raise OccurrenceDataError(
            f"Occurrence table is missing required columns: {missing_columns}. "
            f"Found {len(df.columns)} columns total."
        )

    logger.debug(f"All required columns present: {required_columns}")
    return True


def _log_data_quality(
    df: pd.DataFrame,
    species_col: str,
    lon_col: str,
    lat_col: str,
) -> None:
    """Log data quality statistics for an occurrence table."""
    stats = get_coordinate_quality_stats(df, lon_col, lat_col)
    stats['distinct_species'] = df[species_col].nunique()

    logger.info("Data quality summary:")
    for key, value in stats.items():
        logger.info(f"  {key}: {value}")


def get_coordinate_quality_stats(
    df: pd.DataFrame,
    lon_col: str = 'decimalLongitude',
    lat_col: str = 'decimalLatitude',
) -> Dict[str, Any]:
    """
    Calculate statistics about coordinate completeness and duplication.

    Returns
    -------
    Dict[str, Any]
        total_records, with_coordinates, missing_coordinates,
        duplicate_coordinates (records repeating an earlier coordinate pair)
    """
    has_coords = df[lon_col].notna() & df[lat_col].notna()
    complete = df.loc[has_coords, [lon_col, lat_col]]

    return {
        'total_records': len(df),
        'with_coordinates': int(has_coords.sum()),
        'missing_coordinates': int((~has_coords).sum()),
        'duplicate_coordinates': int(complete.duplicated().sum()),
    }


# ============================================================================
# Cleaned Point Table
# ============================================================================

def read_cleaned_points(
    path: Union[str, Path],
    crs,
    x_col: str = 'X',
    y_col: str = 'Y',
    sep: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Reload a cleaned point table written by the cleaner.

    Parameters
    ----------
    path : Union[str, Path]
        Cleaned occurrence table
    crs
        CRS of the resolved X/Y columns (the region set's CRS)
    x_col, y_col : str
        Resolved coordinate columns (default: 'X', 'Y')
    sep : str, optional
        Field separator. If None, inferred from the file suffix

    Returns
    -------
    gpd.GeoDataFrame
        Points built from the X/Y columns
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Cleaned point table not found: {path}")

    if sep is None:
        sep = infer_separator(path)

    try:
        df = pd.read_csv(path, sep=sep, low_memory=False)
    except pd.errors.EmptyDataError as e:
        raise OccurrenceDataError(f"Cleaned point table is empty: {path}") from e

    validate_required_columns(df, [x_col, y_col])

    logger.info(f"Loaded {len(df)} cleaned points from {path}")
    return gpd.GeoDataFrame(
        df,
        geometry=gpd.points_from_xy(df[x_col], df[y_col]),
        crs=crs,
    )
