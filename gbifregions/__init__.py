"""
GBIFRegions: Occurrence Coordinate Cleaning and Regional Summaries

GBIFRegions is a Python package for turning GBIF occurrence downloads into
per-region occurrence and species counts. Coordinates are cleaned against the
same polygon set they are later counted into, so records that fall just
outside the study area are corrected instead of silently lost.

Core functionality includes:
- Removal of records with missing or duplicate coordinates
- Bounding box cropping
- Classification of points against the union of the region polygons, with
  outside points snapped to the nearest boundary location
- Per-region occurrence and distinct-species counts, zero-filled
- Maps, bar charts and an HTML summary report
"""

__version__ = "0.1.0"

# Import main modules for easy access
from . import core
from . import cleaning
from . import aggregation
from . import regions
from . import occurrences
from . import geometry
from . import visualization
from . import utils

__all__ = [
    "core",
    "cleaning",
    "aggregation",
    "regions",
    "occurrences",
    "geometry",
    "visualization",
    "utils",
]
