"""
Configuration Management for GBIFRegions

This module provides the configuration system for the occurrence cleaning and
regional aggregation pipeline. Every constant a run needs (file paths,
bounding box, CRS codes, column names) lives in an immutable configuration
object that is passed explicitly into each procedure; nothing is read from
process-wide mutable state.

Configuration Structure:
- CleaningConfig: Occurrence table columns, bounding box, outlier handling
- RegionConfig: Region polygon file and identifier/name columns
- AggregationConfig: Per-region counting parameters
- VisualizationConfig: Plot styling and output parameters
- PipelineConfig: Master configuration combining all components

Configuration sources:
1. Defaults (GBIF simple-download column names, WGS84 input CRS)
2. YAML/JSON files
3. Environment variable overrides (GBIFREGIONS_ prefix)

Example Usage:
    >>> from gbifregions.config import get_default_config, load_config_from_file
    >>>
    >>> config = get_default_config()
    >>> print(config.cleaning.source_crs)
    EPSG:4326
    >>>
    >>> config = load_config_from_file("my_run.yaml")
    >>> custom = config.update(
    ...     cleaning__outlier_policy="mark",
    ...     regions__id_col="GEOID",
    ... )
"""

from dataclasses import dataclass, field, asdict, fields, is_dataclass, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Union, Tuple
import os
import json
import logging

import yaml

logger = logging.getLogger(__name__)


OUTLIER_POLICIES = ("snap", "mark", "drop")
SNAP_MODES = ("edge", "vertex")


# ============================================================================
# Cleaning Configuration
# ============================================================================

@dataclass(frozen=True)
class CleaningConfig:
    """
    Configuration for the coordinate cleaning procedure.

    Attributes
    ----------
    occurrence_path : Optional[Path]
        Path to the raw occurrence table (delimited text).

    species_col : str
        Column holding the species name (default: "species", as in GBIF
        simple downloads).

    lon_col : str
        Longitude column (default: "decimalLongitude").

    lat_col : str
        Latitude column (default: "decimalLatitude").

    source_crs : str
        CRS of the raw coordinates (default: "EPSG:4326").

    bbox : Optional[Tuple[float, float, float, float]]
        Crop extent as (min_lon, min_lat, max_lon, max_lat) in the source CRS.
        None disables cropping. Points on the edge are kept.

    crop_regions : bool
        Also clip the reference polygons to the bbox before building the
        unified boundary (default: True).

    outlier_policy : str
        What to do with points outside the unified boundary (default: "snap").
        - "snap": move them to the nearest boundary location
        - "mark": keep original coordinates, flag as outside
        - "drop": remove them

    snap_mode : str
        "edge" snaps to the nearest point on the boundary perimeter;
        "vertex" snaps to the nearest boundary vertex (default: "edge").

    dedupe_per_species : bool
        Deduplicate on (species, lon, lat) instead of (lon, lat)
        (default: False).

    sep : Optional[str]
        Field separator for the occurrence table. None infers it from the
        file suffix.
    """
    occurrence_path: Optional[Path] = None
    species_col: str = "species"
    lon_col: str = "decimalLongitude"
    lat_col: str = "decimalLatitude"
    source_crs: str = "EPSG:4326"
    bbox: Optional[Tuple[float, float, float, float]] = None
    crop_regions: bool = True
    outlier_policy: str = "snap"
    snap_mode: str = "edge"
    dedupe_per_species: bool = False
    sep: Optional[str] = None

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.occurrence_path is not None and isinstance(self.occurrence_path, str):
            object.__setattr__(self, 'occurrence_path', Path(self.occurrence_path))

        if self.outlier_policy not in OUTLIER_POLICIES:
            raise ValueError(
                f"Invalid outlier_policy '{self.outlier_policy}'. "
                f"Must be one of: {list(OUTLIER_POLICIES)}"
            )
        if self.snap_mode not in SNAP_MODES:
            raise ValueError(
                f"Invalid snap_mode '{self.snap_mode}'. Must be one of: {list(SNAP_MODES)}"
            )
        if self.lon_col == self.lat_col:
            raise ValueError("lon_col and lat_col must be different columns")

        if self.bbox is not None:
            if len(self.bbox) != 4:
                raise ValueError(
                    "bbox must have four values: (min_lon, min_lat, max_lon, max_lat)"
                )
            bbox = tuple(float(v) for v in self.bbox)
            if bbox[0] > bbox[2] or bbox[1] > bbox[3]:
                raise ValueError(
                    f"bbox minimums must not exceed maximums, got {bbox}"
                )
            object.__setattr__(self, 'bbox', bbox)


# ============================================================================
# Region Configuration
# ============================================================================

@dataclass(frozen=True)
class RegionConfig:
    """
    Configuration for the region polygon set.

    Attributes
    ----------
    regions_path : Optional[Path]
        Path to a vector file (GeoPackage, shapefile, GeoJSON, ...) with the
        region polygons and CRS metadata.

    id_col : Optional[str]
        Region identifier column. None auto-detects a common name.

    name_col : Optional[str]
        Region name column. None auto-detects a common name.

    layer : Optional[str]
        Layer name for multi-layer sources such as GeoPackages.
    """
    regions_path: Optional[Path] = None
    id_col: Optional[str] = None
    name_col: Optional[str] = None
    layer: Optional[str] = None

    def __post_init__(self):
        if self.regions_path is not None and isinstance(self.regions_path, str):
            object.__setattr__(self, 'regions_path', Path(self.regions_path))


# ============================================================================
# Aggregation Configuration
# ============================================================================

@dataclass(frozen=True)
class AggregationConfig:
    """
    Configuration for per-region aggregation.

    Attributes
    ----------
    species_col : Optional[str]
        Species column used for distinct-species counts. None reuses
        ``CleaningConfig.species_col``.

    x_col, y_col : str
        Resolved coordinate columns written by the cleaner and read back by
        the aggregator (default: "X", "Y").

    boundary_tolerance : float
        Points outside every region but within this distance (region CRS
        units) of one are assigned to the first such region. Covers snapped
        points that land a rounding error off the boundary (default: 1e-6).
        0 disables the fallback.
    """
    species_col: Optional[str] = None
    x_col: str = "X"
    y_col: str = "Y"
    boundary_tolerance: float = 1e-6

    def __post_init__(self):
        if self.x_col == self.y_col:
            raise ValueError("x_col and y_col must be different columns")
        if self.boundary_tolerance < 0:
            raise ValueError("boundary_tolerance must be non-negative")


# ============================================================================
# Visualization Configuration
# ============================================================================

@dataclass(frozen=True)
class VisualizationConfig:
    """
    Configuration for maps and charts.

    Attributes
    ----------
    figure_dpi : int
        Resolution for raster outputs (default: 300)

    figure_format : List[str]
        Output formats (default: ["png"])

    cmap : str
        Matplotlib colormap for choropleths (default: "viridis")

    map_figsize : tuple
        Figure size for maps in inches (default: (10, 8))

    barplot_figsize : tuple
        Figure size for bar charts in inches (default: (10, 6))
    """
    figure_dpi: int = 300
    figure_format: List[str] = field(default_factory=lambda: ["png"])
    cmap: str = "viridis"
    map_figsize: tuple = (10, 8)
    barplot_figsize: tuple = (10, 6)

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.figure_dpi < 72:
            raise ValueError("figure_dpi must be at least 72")
        unsupported = [f for f in self.figure_format if f not in ("png", "pdf", "svg")]
        if unsupported:
            raise ValueError(f"Unsupported figure formats: {unsupported}")


# ============================================================================
# Master Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for a GBIFRegions run.

    Attributes
    ----------
    cleaning : CleaningConfig
        Coordinate cleaning configuration

    regions : RegionConfig
        Region polygon set configuration

    aggregation : AggregationConfig
        Per-region counting configuration

    visualization : VisualizationConfig
        Figure generation configuration

    log_level : str
        Logging level (default: "INFO")

    output_dir : Path
        Base output directory (default: "results")

    overwrite_existing : bool
        Replace output files left by an earlier run (default: True). When
        False, a run refuses to start if any of its outputs exists

    make_plots : bool
        Write maps and charts (default: True)

    make_report : bool
        Write the HTML summary report (default: True)
    """
    cleaning: CleaningConfig = field(default_factory=CleaningConfig)
    regions: RegionConfig = field(default_factory=RegionConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    log_level: str = "INFO"
    output_dir: Path = field(default_factory=lambda: Path("results"))
    overwrite_existing: bool = True
    make_plots: bool = True
    make_report: bool = True

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.output_dir, str):
            object.__setattr__(self, 'output_dir', Path(self.output_dir))

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

    @property
    def species_col(self) -> str:
        """Species column used by the aggregator."""
        return self.aggregation.species_col or self.cleaning.species_col

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        config.update(cleaning__outlier_policy="drop")

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., regions__id_col)

        Returns
        -------
        PipelineConfig
            New configuration object with updates

        Raises
        ------
        ValueError
            If a key names no configuration section or parameter
        """
        top_level = {}
        nested = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        known_top = {f.name for f in fields(self)}
        unknown_top = sorted(set(top_level) - known_top)
        if unknown_top:
            raise ValueError(f"Unknown configuration parameters: {unknown_top}")

        for component, updates in nested.items():
            current = getattr(self, component, None)
            if not is_dataclass(current):
                raise ValueError(f"Unknown configuration section: '{component}'")
            known = {f.name for f in fields(current)}
            unknown = sorted(set(updates) - known)
            if unknown:
                raise ValueError(f"Unknown {component} parameters: {unknown}")
            top_level[component] = replace(current, **updates)

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a nested dictionary."""
        return asdict(self)

    def to_serializable(self) -> Dict[str, Any]:
        """Nested dictionary with Paths as strings and tuples as lists."""
        return _to_serializable(self.to_dict())

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to YAML file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = self.to_serializable()

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Parameters
        ----------
        output_path : Union[str, Path]
            Output file path
        """
        config_dict = self.to_serializable()

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> PipelineConfig:
    """
    Get default pipeline configuration.

    Returns
    -------
    PipelineConfig
        Default configuration
    """
    return PipelineConfig()


def load_config_from_file(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    PipelineConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported or the content is not a mapping
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    with open(path, 'r') as f:
        if suffix in ['.yaml', '.yml']:
            config_dict = yaml.safe_load(f)
        elif suffix == '.json':
            config_dict = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {suffix}")

    if config_dict is None:
        config_dict = {}
    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


_NESTED_CONFIGS = {
    'cleaning': CleaningConfig,
    'regions': RegionConfig,
    'aggregation': AggregationConfig,
    'visualization': VisualizationConfig,
}


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """Convert a (possibly partial) dictionary to a PipelineConfig."""
    config_dict = dict(config_dict)
    nested_configs = {}

    for name, cls in _NESTED_CONFIGS.items():
        if name in config_dict:
            values = config_dict.pop(name) or {}
            if 'bbox' in values and values['bbox'] is not None:
                values = dict(values, bbox=tuple(values['bbox']))
            if 'map_figsize' in values:
                values = dict(values, map_figsize=tuple(values['map_figsize']))
            if 'barplot_figsize' in values:
                values = dict(values, barplot_figsize=tuple(values['barplot_figsize']))
            nested_configs[name] = cls(**values)

    return PipelineConfig(**nested_configs, **config_dict)


def _to_serializable(obj: Any) -> Any:
    """Recursively convert Paths to strings and tuples to lists."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _to_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables are prefixed with GBIFREGIONS_ and use double
    underscores for nesting:

    GBIFREGIONS_CLEANING__OUTLIER_POLICY=drop
    GBIFREGIONS_LOG_LEVEL=DEBUG

    Returns
    -------
    Dict[str, Any]
        Overrides suitable for ``PipelineConfig.update(**overrides)``
    """
    prefix = "GBIFREGIONS_"
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    # Comma-separated numbers, e.g. a bbox
    parts = [p.strip() for p in value.split(',')]
    if len(parts) > 1:
        try:
            return tuple(float(p) for p in parts)
        except ValueError:
            pass

    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Parameters
    ----------
    config : PipelineConfig
        Configuration to validate

    Returns
    -------
    List[str]
        List of warning messages (empty if no issues)
    """
    warnings = []

    occ = config.cleaning.occurrence_path
    if occ is None:
        warnings.append("No occurrence table configured (cleaning.occurrence_path).")
    elif not occ.exists():
        warnings.append(f"Occurrence table not found: {occ}")

    reg = config.regions.regions_path
    if reg is None:
        warnings.append("No region polygon file configured (regions.regions_path).")
    elif not reg.exists():
        warnings.append(f"Region polygon file not found: {reg}")

    bbox = config.cleaning.bbox
    if bbox is not None and config.cleaning.source_crs.upper() == "EPSG:4326":
        min_lon, min_lat, max_lon, max_lat = bbox
        if min_lon < -180 or max_lon > 180 or min_lat < -90 or max_lat > 90:
            warnings.append(
                f"bbox {bbox} extends beyond valid geographic coordinates."
            )

    if config.cleaning.dedupe_per_species:
        warnings.append(
            "dedupe_per_species is enabled: records of different species at the "
            "same coordinate are kept, so coordinate pairs may repeat."
        )

    return warnings


def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Create a configuration template file with default values.

    Parameters
    ----------
    output_path : Union[str, Path]
        Output file path
    format : str
        File format: "yaml" or "json" (default: "yaml")
    """
    config = get_default_config()

    if format.lower() == "yaml":
        config.to_yaml(output_path)
    elif format.lower() == "json":
        config.to_json(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Created configuration template: {output_path}")
