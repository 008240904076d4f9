"""
Helper Functions and Utilities

This module provides common utility functions used throughout the GBIFRegions
package: logging configuration, output directory handling, delimited-file
conventions and atomic writes of tabular and vector outputs.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for the ``gbifregions`` package logger
   - Console and optional file output

2. File I/O and Path Handling
   - Separator inference from file suffixes (.tsv, .txt, .csv)
   - Atomic writes: outputs are written to a temporary file in the target
     directory and moved into place, so a failed run never leaves a
     partially written file and prior outputs stay untouched
   - ``StagedOutputs`` replaces a group of outputs only once all of them
     have been written

3. Formatting Helpers
   - Elapsed time and timestamps for logs and reports

Example Usage:
    >>> from gbifregions.utils import setup_logging, write_table
    >>> setup_logging(log_level="DEBUG", log_file="run.log")
    >>> write_table(summary_df, "results/region_summary.tsv")
"""

from typing import List, Optional, Tuple, Union
from pathlib import Path
from datetime import datetime
import logging
import os
import shutil
import sys
import tempfile

import pandas as pd
import geopandas as gpd

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for GBIFRegions.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: Starting run
    """
    package_logger = logging.getLogger("gbifregions")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_file}")

    return package_logger


# ============================================================================
# File I/O and Path Handling
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Path to output directory

    Returns
    -------
    Path
        Path object for output directory

    Raises
    ------
    OSError
        If directory cannot be created due to permissions or other issues
    """
    path = Path(output_dir)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created/verified output directory: {path}")
        return path
    except OSError as e:
        logger.error(f"Failed to create directory {path}: {e}")
        raise


def infer_separator(path: Union[str, Path]) -> str:
    """
    Infer the field separator of a delimited text file from its suffix.

    GBIF simple downloads are tab-separated ``.csv`` or ``.txt`` files in
    practice, so only an explicit ``.csv`` suffix maps to a comma.

    Examples
    --------
    >>> infer_separator("occurrence.txt")
    '\\t'
    >>> infer_separator("summary.csv")
    ','
    """
    suffix = Path(path).suffix.lower()
    if suffix == '.csv':
        return ','
    return '\t'


def _replace_atomically(path: Path, write_func) -> Path:
    """
    Run ``write_func(tmp_path)`` in a scratch directory next to ``path`` and
    move the result over ``path``.

    The scratch directory is removed whether or not the write succeeds.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix=".tmp_", dir=path.parent))
    try:
        tmp_path = scratch / path.name
        write_func(tmp_path)
        os.replace(tmp_path, path)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
    return path


def write_table(
    df: pd.DataFrame,
    output_path: Union[str, Path],
    sep: Optional[str] = None,
) -> Path:
    """
    Write a table as delimited text, atomically.

    Geometry columns are not written; resolved coordinates travel in plain
    numeric columns instead.

    Parameters
    ----------
    df : pd.DataFrame
        Table to write (a GeoDataFrame is accepted)
    output_path : Union[str, Path]
        Destination file
    sep : str, optional
        Field separator. If None, inferred from the suffix

    Returns
    -------
    Path
        Path of the written file
    """
    path = Path(output_path)
    if sep is None:
        sep = infer_separator(path)

    table = pd.DataFrame(df)
    if isinstance(df, gpd.GeoDataFrame):
        geom_cols = [c for c in table.columns if table[c].dtype.name == "geometry"]
        table = table.drop(columns=geom_cols)

    _replace_atomically(
        path,
        lambda tmp: table.to_csv(tmp, sep=sep, index=False, lineterminator='\n'),
    )
    logger.debug(f"Wrote {len(table)} rows to {path}")
    return path


def write_text(content: str, output_path: Union[str, Path]) -> Path:
    """Write a UTF-8 text file (report, parameter record), atomically."""
    path = Path(output_path)
    _replace_atomically(path, lambda tmp: tmp.write_text(content, encoding='utf-8'))
    logger.debug(f"Wrote {path}")
    return path


VECTOR_DRIVERS = {
    '.gpkg': 'GPKG',
    '.geojson': 'GeoJSON',
    '.json': 'GeoJSON',
}


def write_vector(gdf: gpd.GeoDataFrame, output_path: Union[str, Path]) -> Path:
    """
    Write a GeoDataFrame to a single-file vector format, atomically.

    Parameters
    ----------
    gdf : gpd.GeoDataFrame
        Features to write
    output_path : Union[str, Path]
        Destination file (.gpkg, .geojson or .json)

    Returns
    -------
    Path
        Path of the written file

    Raises
    ------
    ValueError
        If the suffix is not a supported single-file vector format
    """
    path = Path(output_path)
    driver = VECTOR_DRIVERS.get(path.suffix.lower())
    if driver is None:
        raise ValueError(
            f"Unsupported vector output format '{path.suffix}'. "
            f"Use one of: {sorted(VECTOR_DRIVERS)}"
        )

    _replace_atomically(path, lambda tmp: gdf.to_file(tmp, driver=driver))
    logger.debug(f"Wrote {len(gdf)} features to {path}")
    return path


class StagedOutputs:
    """
    Stage several outputs in one scratch directory and move them into place
    together.

    Files are written to the paths handed out by ``path_for``. Only when the
    ``with`` block finishes without an error are they moved over their
    targets, so a failure while producing any of them leaves every earlier
    output untouched. The scratch directory is always removed.

    Examples
    --------
    >>> with StagedOutputs("results") as staged:
    ...     write_table(summary, staged.path_for("results/region_summary.tsv"))
    ...     write_vector(enriched, staged.path_for("results/regions.gpkg"))
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)
        self.scratch: Optional[Path] = None
        self.staged: List[Tuple[Path, Path]] = []

    def __enter__(self) -> 'StagedOutputs':
        create_output_directory(self.output_dir)
        self.scratch = Path(tempfile.mkdtemp(prefix=".tmp_", dir=self.output_dir))
        self.staged = []
        return self

    def path_for(self, output_path: Union[str, Path]) -> Path:
        """Scratch path to write ``output_path`` to; keeps its file name."""
        target = Path(output_path)
        staging_dir = self.scratch / str(len(self.staged))
        staging_dir.mkdir()
        tmp_path = staging_dir / target.name
        self.staged.append((tmp_path, target))
        return tmp_path

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                for tmp_path, target in self.staged:
                    if not tmp_path.exists():
                        raise FileNotFoundError(f"Staged output was never written: {target}")
                for tmp_path, target in self.staged:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(tmp_path, target)
        finally:
            shutil.rmtree(self.scratch, ignore_errors=True)
        return False


# ============================================================================
# Time and Formatting Utilities
# ============================================================================

def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable format.

    Examples
    --------
    >>> format_elapsed_time(45)
    '45s'
    >>> format_elapsed_time(90)
    '1.5m'
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"

    hours = minutes / 60
    return f"{int(hours)}h {int(minutes % 60)}m"


def get_timestamp() -> str:
    """Current timestamp in ISO format (seconds precision)."""
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%S")
