"""
Layer workspace: import, compute and export named rasters and vectors.

A Workspace is bound to one Region (projection and resolution). Every raster
it holds is aligned to the same grid, which is fixed either by the region
bounds or by the first imported raster.
"""

import fnmatch
import logging
from pathlib import Path
from typing import Callable, Optional

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.features import rasterize
from rasterio.warp import reproject, transform_bounds

from .config import Region
from .errors import NicheMapError, SpatialReferenceError
from .rasters import GridSpec, Raster, check_aligned, write_raster
from .storage import retry_io
from . import rasterops

logger = logging.getLogger(__name__)


def _params(params: dict, *names: str) -> list:
    missing = [n for n in names if n not in params]
    if missing:
        raise ValueError(f"Missing parameters: {missing}")
    return [params[n] for n in names]


def _op_rasterize(ws: "Workspace", inputs: list[str], **params) -> np.ndarray:
    gdf = ws.vector(inputs[0])
    shapes = [(geom, 1) for geom in gdf.geometry if geom is not None and not geom.is_empty]
    if not shapes:
        return np.zeros(ws.grid.shape, dtype=bool)
    burned = rasterize(
        shapes,
        out_shape=ws.grid.shape,
        transform=ws.grid.transform,
        fill=0,
        all_touched=params.get("all_touched", True),
        dtype="uint8",
    )
    return burned.astype(bool)


def _op_texture(ws: "Workspace", inputs: list[str], **params) -> np.ndarray:
    size, method = _params(params, "size", "method")
    levels = params.get("levels", 16)
    grey = rasterops.quantize(ws.get(inputs[0]).array, levels)
    return rasterops.tiled(
        lambda tile: rasterops.glcm_texture(tile, size, method, levels),
        grey,
        tile_size=params.get("tile_size", 1000),
        halo=size // 2 + 1,
        n_jobs=params.get("n_jobs", 1),
    )


def _windowed(func: Callable) -> Callable:
    def op(ws: "Workspace", inputs: list[str], **params) -> np.ndarray:
        (size,) = _params(params, "size")
        return func(ws.get(inputs[0]).array, size)
    return op


# Operations available through Workspace.compute: name -> fn(ws, inputs, **params)
OPERATIONS: dict[str, Callable[..., np.ndarray]] = {
    "radiance": lambda ws, inputs, **p: rasterops.toa_radiance(
        ws.get(inputs[0]).array, *_params(p, "gain"), p.get("bias", 0.0)
    ),
    "dos": lambda ws, inputs, **p: rasterops.dos_reflectance(
        ws.get(inputs[0]).array, *_params(p, "esun", "sun_elevation"), p.get("earth_sun_distance", 1.0)
    ),
    "ndvi": lambda ws, inputs, **p: rasterops.ndvi(ws.get(inputs[0]).array, ws.get(inputs[1]).array),
    "ndwi": lambda ws, inputs, **p: rasterops.ndwi(ws.get(inputs[0]).array, ws.get(inputs[1]).array),
    "average": _windowed(rasterops.neighborhood_average),
    "stddev": _windowed(rasterops.neighborhood_stddev),
    "shannon": _windowed(rasterops.shannon_diversity),
    "simpson": _windowed(rasterops.simpson_diversity),
    "richness": _windowed(rasterops.richness),
    "mode": _windowed(rasterops.mode),
    "interspersion": _windowed(rasterops.interspersion),
    "texture": _op_texture,
    "classify": lambda ws, inputs, **p: rasterops.unsupervised_classes(
        [ws.get(n).array for n in inputs], *_params(p, "n_classes"),
        sample_step=p.get("sample_step", 15), seed=p.get("seed"),
    ),
    "class_mask": lambda ws, inputs, **p: np.where(
        ws.get(inputs[0]).array == _params(p, "value")[0], 1.0, np.nan
    ),
    "distance": lambda ws, inputs, **p: rasterops.grow_distance(
        ~np.isnan(ws.get(inputs[0]).array) & (ws.get(inputs[0]).array != 0), ws.grid.resolution
    ),
    "rasterize": lambda ws, inputs, **p: np.where(_op_rasterize(ws, inputs, **p), 1.0, np.nan),
}


class Workspace:
    """
    Named raster and vector layers aligned to one region.

    The public surface mirrors a GIS session: import_raster / import_vector
    return a layer name, compute(op, inputs, output) derives a new layer,
    export writes one to disk, remove drops layers by pattern.
    """

    def __init__(self, region: Region, grid: Optional[GridSpec] = None):
        self.region = region
        self.grid = grid
        if grid is None and region.bounds is not None:
            self.grid = GridSpec.from_bounds(region.bounds, region.resolution, region.crs)
        self._rasters: dict[str, Raster] = {}
        self._vectors: dict[str, gpd.GeoDataFrame] = {}

    # -- layers ---------------------------------------------------------------

    def layers(self, pattern: str = "*") -> list[str]:
        return sorted(n for n in self._rasters if fnmatch.fnmatch(n, pattern))

    def vectors(self, pattern: str = "*") -> list[str]:
        return sorted(n for n in self._vectors if fnmatch.fnmatch(n, pattern))

    def get(self, name: str) -> Raster:
        if name not in self._rasters:
            raise KeyError(f"No raster layer named '{name}'")
        return self._rasters[name]

    def vector(self, name: str) -> gpd.GeoDataFrame:
        if name not in self._vectors:
            raise KeyError(f"No vector layer named '{name}'")
        return self._vectors[name]

    def add(self, raster: Raster, name: Optional[str] = None) -> str:
        """Add an already-aligned raster under `name`."""
        name = name or raster.name
        if self.grid is None:
            self.grid = raster.grid
        check_aligned([Raster(np.zeros(self.grid.shape), self.grid, name="workspace"), raster])
        self._rasters[name] = raster.with_array(raster.array, name=name)
        return name

    def add_vector(self, gdf: gpd.GeoDataFrame, name: str) -> str:
        if gdf.crs is None:
            raise SpatialReferenceError("Vector layer has no CRS", item=name)
        self._vectors[name] = gdf.to_crs(self.region.crs)
        return name

    def remove(self, pattern: str) -> list[str]:
        removed = [n for n in list(self._rasters) if fnmatch.fnmatch(n, pattern)]
        for n in removed:
            del self._rasters[n]
        removed_vectors = [n for n in list(self._vectors) if fnmatch.fnmatch(n, pattern)]
        for n in removed_vectors:
            del self._vectors[n]
        if removed or removed_vectors:
            logger.debug(f"Removed {len(removed) + len(removed_vectors)} layers matching '{pattern}'")
        return removed + removed_vectors

    # -- import / export ------------------------------------------------------

    def _grid_for(self, src) -> GridSpec:
        west, south, east, north = transform_bounds(src.crs, self.region.crs, *src.bounds)
        return GridSpec.from_bounds((west, south, east, north), self.region.resolution, self.region.crs)

    def _read_bands(self, path: Path, bands: Optional[list[int]], resampling: str) -> list[np.ndarray]:
        with rasterio.open(path) as src:
            if src.crs is None:
                raise SpatialReferenceError("Raster has no CRS", item=str(path))
            if self.grid is None:
                self.grid = self._grid_for(src)
                logger.info(f"Workspace grid set from {path.name}: {self.grid.width} x {self.grid.height} cells")
            indexes = bands or list(range(1, src.count + 1))
            arrays = []
            for band in indexes:
                data = src.read(band).astype(np.float64)
                if src.nodata is not None:
                    data[data == src.nodata] = np.nan
                dest = np.full(self.grid.shape, np.nan)
                reproject(
                    source=data,
                    destination=dest,
                    src_transform=src.transform,
                    src_crs=src.crs,
                    src_nodata=np.nan,
                    dst_transform=self.grid.transform,
                    dst_crs=self.grid.crs,
                    dst_nodata=np.nan,
                    resampling=Resampling[resampling],
                )
                arrays.append(dest)
        return arrays

    def import_raster(
        self,
        path: str | Path,
        name: str,
        bands: Optional[list[int]] = None,
        resampling: str = "bilinear",
    ) -> list[str]:
        """
        Import raster bands, warped onto the workspace grid.

        A single band is stored as `name`; several as `name.<band>`.

        Returns:
            The created layer names
        """
        path = Path(path)
        arrays = retry_io(self._read_bands, path, bands, resampling, item=str(path))
        indexes = bands or list(range(1, len(arrays) + 1))
        names = [name] if len(arrays) == 1 else [f"{name}.{i}" for i in indexes]
        for layer, arr in zip(names, arrays):
            self._rasters[layer] = Raster(arr, self.grid, name=layer)
        logger.info(f"Imported {path.name} as {', '.join(names)}")
        return names

    def import_vector(self, path: str | Path, name: str, min_area: Optional[float] = None) -> str:
        path = Path(path)
        gdf = retry_io(gpd.read_file, path, item=str(path))
        if gdf.crs is None:
            raise SpatialReferenceError("Vector layer has no CRS", item=str(path))
        gdf = gdf.to_crs(self.region.crs)
        if min_area is not None:
            polygonal = gdf.geometry.geom_type.isin(["Polygon", "MultiPolygon"])
            gdf = gdf[~polygonal | (gdf.geometry.area >= min_area)]
        self._vectors[name] = gdf
        logger.info(f"Imported {path.name} as vector '{name}' ({len(gdf)} features)")
        return name

    def export(self, name: str, path: str | Path, fmt: Optional[str] = None) -> Path:
        return write_raster(self.get(name), path, fmt=fmt)

    # -- computation ----------------------------------------------------------

    def compute(self, op: str, inputs: list[str], output: str, **params) -> str:
        """
        Derive a new raster layer.

        Args:
            op: Operation name (see OPERATIONS)
            inputs: Input layer names
            output: Name of the created layer
            **params: Operation parameters

        Returns:
            The output layer name
        """
        if op not in OPERATIONS:
            raise ValueError(f"Unknown operation '{op}'. Choose from {sorted(OPERATIONS)}")
        if self.grid is None:
            raise SpatialReferenceError("Workspace grid is not set; import a raster first", item=output)

        logger.debug(f"compute {op}({', '.join(inputs)}) -> {output} {params}")
        try:
            result = OPERATIONS[op](self, inputs, **params)
        except (ValueError, KeyError, MemoryError) as e:
            raise NicheMapError(f"Operation '{op}' failed: {e}", item=output) from e

        self._rasters[output] = Raster(np.asarray(result, dtype=np.float64), self.grid, name=output)
        return output
