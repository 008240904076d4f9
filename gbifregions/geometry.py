"""
Geometry Capability Interface

The cleaning and aggregation procedures only need a handful of spatial
primitives: polygon union, point/polygon intersection, nearest point on a
boundary, casting a boundary to its vertices, and CRS transformation. They are
collected behind ``GeometryBackend`` so the procedures never call a geometry
library directly. ``ShapelyBackend`` is the implementation used by default
(shapely 2 for geometry, pyproj through GeoPandas for CRS handling).

Nearest-point tie-break:
When several boundary locations are equally close to a point, the boundary is
walked in polygon traversal order (polygons in the order the union returns
them, exterior ring before interior rings) and the first part at the minimum
distance wins. Within that part the GEOS nearest-point result is used for
edge snapping; for vertex snapping the first vertex at minimum distance wins.
This makes corrected coordinates reproducible across runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Tuple
import logging

import numpy as np
import shapely
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import nearest_points, unary_union
import geopandas as gpd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    """
    Rectangular extent in a geographic CRS. Edges are inclusive.

    Examples
    --------
    >>> bbox = BoundingBox(-10.0, 35.0, 5.0, 44.0)
    >>> bbox.contains(5.0, 44.0)
    True
    """
    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def __post_init__(self):
        if self.min_lon > self.max_lon:
            raise ValueError(f"min_lon ({self.min_lon}) exceeds max_lon ({self.max_lon})")
        if self.min_lat > self.max_lat:
            raise ValueError(f"min_lat ({self.min_lat}) exceeds max_lat ({self.max_lat})")

    @classmethod
    def from_sequence(cls, values: Iterable[float]) -> "BoundingBox":
        """Build from ``(min_lon, min_lat, max_lon, max_lat)``."""
        values = [float(v) for v in values]
        if len(values) != 4:
            raise ValueError(
                "Bounding box needs four values: min_lon, min_lat, max_lon, max_lat"
            )
        return cls(*values)

    def contains(self, lon: float, lat: float) -> bool:
        return self.min_lon <= lon <= self.max_lon and self.min_lat <= lat <= self.max_lat

    def to_polygon(self) -> BaseGeometry:
        return box(self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)


class GeometryBackend(ABC):
    """Spatial primitives used by the cleaning and aggregation procedures."""

    @abstractmethod
    def union(self, geometries: Iterable[BaseGeometry]) -> BaseGeometry:
        """Merge polygons into a single (multi)polygon."""

    @abstractmethod
    def intersects(self, points: gpd.GeoSeries, geometry: BaseGeometry) -> np.ndarray:
        """Boolean array, True where a point intersects ``geometry``."""

    @abstractmethod
    def boundary_parts(self, geometry: BaseGeometry) -> List[BaseGeometry]:
        """Boundary lines of ``geometry`` in polygon traversal order."""

    @abstractmethod
    def cast_to_points(self, geometry: BaseGeometry) -> List[Point]:
        """Boundary vertices of ``geometry`` in traversal order."""

    @abstractmethod
    def nearest_boundary_point(self, point: Point, parts: List[BaseGeometry]) -> Point:
        """Nearest location on the given boundary parts."""

    @abstractmethod
    def nearest_vertex(self, point: Point, vertices: List[Point]) -> Point:
        """Nearest of the given vertices."""

    @abstractmethod
    def transform(self, gdf: gpd.GeoDataFrame, target_crs) -> gpd.GeoDataFrame:
        """Reproject a GeoDataFrame; coordinates only, attributes untouched."""


class ShapelyBackend(GeometryBackend):
    """``GeometryBackend`` backed by shapely and GeoPandas/pyproj."""

    def union(self, geometries):
        geoms = [g for g in geometries if g is not None and not g.is_empty]
        if not geoms:
            raise ValueError("Cannot build a union from an empty geometry set")
        merged = unary_union(geoms)
        if not merged.is_valid:
            logger.warning("Unified boundary is not valid; repairing with make_valid")
            merged = shapely.make_valid(merged)
        return merged

    def intersects(self, points, geometry):
        return np.asarray(points.intersects(geometry), dtype=bool)

    def boundary_parts(self, geometry):
        return list(shapely.get_parts(geometry.boundary))

    def cast_to_points(self, geometry):
        vertices = []
        for part in self.boundary_parts(geometry):
            coords = list(part.coords)
            # Closed rings repeat their first vertex
            if len(coords) > 1 and coords[0] == coords[-1]:
                coords = coords[:-1]
            vertices.extend(Point(c) for c in coords)
        return vertices

    def nearest_boundary_point(self, point, parts):
        if not parts:
            raise ValueError("No boundary parts to snap to")
        distances = [point.distance(part) for part in parts]
        best = int(np.argmin(distances))
        _, nearest = nearest_points(point, parts[best])
        return nearest

    def nearest_vertex(self, point, vertices):
        if not vertices:
            raise ValueError("No boundary vertices to snap to")
        distances = [point.distance(v) for v in vertices]
        return vertices[int(np.argmin(distances))]

    def transform(self, gdf, target_crs):
        if gdf.crs is None:
            raise ValueError("Cannot reproject a GeoDataFrame without a CRS")
        if gdf.crs == target_crs:
            return gdf
        return gdf.to_crs(target_crs)


def get_default_backend() -> GeometryBackend:
    """Return the backend used when a caller does not pass one."""
    return ShapelyBackend()
