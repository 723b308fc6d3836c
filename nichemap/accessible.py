"""
Accessible area (M): the region reachable by dispersal from presence sites.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import geopandas as gpd
import numpy as np
from shapely.geometry import Point
from shapely.ops import unary_union

from .errors import EmptyInputError, SpatialReferenceError
from .storage import atomic_path

logger = logging.getLogger(__name__)

# Polygon segments per quarter circle of each buffer
BUFFER_RESOLUTION = 32


@dataclass(frozen=True)
class AccessibleArea:
    """Union of circular buffers around presence points."""

    geometry: object
    radius: float
    crs: str

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return self.geometry.bounds

    @property
    def area(self) -> float:
        return self.geometry.area

    def contains_all(self, xs, ys) -> bool:
        """True if every point lies inside (or on the boundary of) the area."""
        return all(self.geometry.covers(Point(x, y)) for x, y in zip(xs, ys))

    def to_frame(self) -> gpd.GeoDataFrame:
        return gpd.GeoDataFrame({"radius": [self.radius]}, geometry=[self.geometry], crs=self.crs)

    def to_file(self, path: str | Path) -> Path:
        path = Path(path)
        with atomic_path(path) as tmp:
            self.to_frame().to_file(tmp, driver="GeoJSON")
        return path

    @classmethod
    def from_file(cls, path: str | Path) -> "AccessibleArea":
        gdf = gpd.read_file(path)
        if gdf.crs is None:
            raise SpatialReferenceError("Accessible area file has no CRS", item=str(path))
        geometry = unary_union(list(gdf.geometry))
        radius = float(gdf["radius"].iloc[0]) if "radius" in gdf else float("nan")
        return cls(geometry, radius, gdf.crs.to_string())


def define_accessible_area(xs, ys, radius: float, crs: str) -> AccessibleArea:
    """
    Union of `radius`-metre buffers around each presence point.

    Args:
        xs, ys: Presence coordinates in the metric CRS
        radius: Dispersal distance (map units)
        crs: CRS of the coordinates

    Raises:
        EmptyInputError: if there are no points
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.size == 0:
        raise EmptyInputError("No presence points to buffer", item="accessible area")
    if radius <= 0:
        raise ValueError("Buffer radius must be positive")

    buffers = [Point(x, y).buffer(radius, BUFFER_RESOLUTION) for x, y in zip(xs, ys)]
    geometry = unary_union(buffers)
    logger.info(f"Accessible area: {xs.size} points, radius {radius:g}, area {geometry.area / 1e6:.2f} km²")
    return AccessibleArea(geometry, radius, crs)
