"""
Raster containers and GeoTIFF / ESRI ASCII grid I/O.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine

from .errors import SpatialReferenceError
from .storage import atomic_path, retry_io

logger = logging.getLogger(__name__)

# GDAL driver per export format
DRIVERS = {"GTiff": "GTiff", "AAIGrid": "AAIGrid"}
SUFFIXES = {".tif": "GTiff", ".tiff": "GTiff", ".asc": "AAIGrid"}

ASCII_NODATA = -9999.0


@dataclass(frozen=True)
class GridSpec:
    """Projection, georeferencing and shape shared by aligned rasters."""

    crs: CRS
    transform: Affine
    width: int
    height: int

    @classmethod
    def from_bounds(
        cls,
        bounds: tuple[float, float, float, float],
        resolution: float,
        crs: str | CRS,
    ) -> "GridSpec":
        """Grid covering (xmin, ymin, xmax, ymax) with square cells."""
        xmin, ymin, xmax, ymax = bounds
        width = max(1, int(np.ceil((xmax - xmin) / resolution - 1e-6)))
        height = max(1, int(np.ceil((ymax - ymin) / resolution - 1e-6)))
        transform = rasterio.transform.from_origin(xmin, ymax, resolution, resolution)
        return cls(CRS.from_user_input(crs), transform, width, height)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def resolution(self) -> tuple[float, float]:
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """(west, south, east, north) in map units."""
        west, south, east, north = rasterio.transform.array_bounds(self.height, self.width, self.transform)
        return (west, south, east, north)

    def cell_centers(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (xs, ys) arrays of cell-center coordinates, shaped like the grid."""
        cols, rows = np.meshgrid(np.arange(self.width), np.arange(self.height))
        xs, ys = rasterio.transform.xy(self.transform, rows.ravel(), cols.ravel(), offset="center")
        return np.asarray(xs).reshape(self.shape), np.asarray(ys).reshape(self.shape)

    def matches(self, other: "GridSpec", tol: float = 1e-6) -> bool:
        return (
            self.crs == other.crs
            and self.shape == other.shape
            and all(abs(a - b) <= tol for a, b in zip(self.transform[:6], other.transform[:6]))
        )


@dataclass(frozen=True)
class Raster:
    """A single-band raster. Nodata cells hold NaN."""

    array: np.ndarray
    grid: GridSpec
    name: str = ""

    def __post_init__(self):
        if self.array.shape != self.grid.shape:
            raise SpatialReferenceError(
                f"Array shape {self.array.shape} does not match grid {self.grid.shape}", item=self.name
            )

    def with_array(self, array: np.ndarray, name: Optional[str] = None) -> "Raster":
        return replace(self, array=array, name=name if name is not None else self.name)


def check_aligned(rasters: list[Raster]) -> GridSpec:
    """
    Verify that all rasters share one grid.

    Raises:
        SpatialReferenceError: naming the first raster that differs
    """
    if not rasters:
        raise ValueError("No rasters to check")
    reference = rasters[0].grid
    if reference.crs is None:
        raise SpatialReferenceError("Raster has no CRS", item=rasters[0].name)
    for r in rasters[1:]:
        if r.grid.crs is None:
            raise SpatialReferenceError("Raster has no CRS", item=r.name)
        if not r.grid.matches(reference):
            raise SpatialReferenceError(
                f"Raster is not aligned with '{rasters[0].name}' "
                f"(crs {r.grid.crs} vs {reference.crs}, shape {r.grid.shape} vs {reference.shape})",
                item=r.name,
            )
    return reference


def _read(path: Path, band: int) -> Raster:
    # ASCII grids with decimals are read as Float32 unless asked otherwise
    options = {"DATATYPE": "Float64"} if SUFFIXES.get(path.suffix.lower()) == "AAIGrid" else {}
    with rasterio.open(path, **options) as src:
        if src.crs is None:
            raise SpatialReferenceError("Raster has no CRS", item=str(path))
        data = src.read(band).astype(np.float64)
        if src.nodata is not None:
            data[data == src.nodata] = np.nan
        grid = GridSpec(src.crs, src.transform, src.width, src.height)
    return Raster(data, grid, name=path.stem)


def read_raster(path: str | Path, band: int = 1) -> Raster:
    """Read one band as float64 with nodata converted to NaN."""
    path = Path(path)
    return retry_io(_read, path, band, item=str(path))


def _write(raster: Raster, path: Path, fmt: str, dtype: str) -> None:
    data = raster.array.astype(dtype)
    nodata = ASCII_NODATA if fmt == "AAIGrid" else np.nan
    options = {}
    if fmt == "AAIGrid":
        a, e = raster.grid.transform.a, raster.grid.transform.e
        if not np.isclose(a, -e):
            raise SpatialReferenceError("ASCII grids require square cells", item=raster.name)
        data = np.where(np.isnan(data), ASCII_NODATA, data)
        options["SIGNIFICANT_DIGITS"] = 15
    else:
        options["compress"] = "lzw"

    with atomic_path(path) as tmp:
        with rasterio.open(
            tmp, "w",
            driver=DRIVERS[fmt],
            height=raster.grid.height,
            width=raster.grid.width,
            count=1,
            dtype=dtype,
            crs=raster.grid.crs,
            transform=raster.grid.transform,
            nodata=nodata,
            **options,
        ) as dst:
            dst.write(data, 1)


def write_raster(
    raster: Raster,
    path: str | Path,
    fmt: Optional[str] = None,
    dtype: str = "float64",
) -> Path:
    """
    Write a raster atomically.

    Args:
        raster: Raster to write
        path: Target file; the format is inferred from the suffix if not given
        fmt: "GTiff" or "AAIGrid" (ASCII grid with a .prj sidecar)
        dtype: Output data type

    Returns:
        The written path
    """
    path = Path(path)
    fmt = fmt or SUFFIXES.get(path.suffix.lower())
    if fmt not in DRIVERS:
        raise ValueError(f"Unsupported raster format for {path}: {fmt}")
    retry_io(_write, raster, path, fmt, dtype, item=raster.name or str(path))
    logger.debug(f"Wrote {fmt} raster {path}")
    return path


def sample(
    raster: Raster,
    xs: np.ndarray,
    ys: np.ndarray,
    method: str = "nearest",
) -> np.ndarray:
    """
    Sample raster values at map coordinates.

    Points outside the grid get NaN. Bilinear interpolation uses the four
    surrounding cell centers, re-weighting over the ones that hold data.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    height, width = raster.grid.shape
    inverse = ~raster.grid.transform
    cols, rows = inverse * (xs, ys)
    cols = np.asarray(cols, dtype=float)
    rows = np.asarray(rows, dtype=float)
    inside = (cols >= 0) & (cols < width) & (rows >= 0) & (rows < height)
    values = np.full(xs.shape, np.nan)

    if method == "nearest":
        r = np.floor(rows[inside]).astype(int)
        c = np.floor(cols[inside]).astype(int)
        values[inside] = raster.array[r, c]
        return values

    if method != "bilinear":
        raise ValueError(f"Unknown sampling method: {method}")

    # Fractional position relative to cell centers
    fc = np.clip(cols[inside] - 0.5, 0, width - 1)
    fr = np.clip(rows[inside] - 0.5, 0, height - 1)
    c0 = np.floor(fc).astype(int)
    r0 = np.floor(fr).astype(int)
    c1 = np.minimum(c0 + 1, width - 1)
    r1 = np.minimum(r0 + 1, height - 1)
    dc = fc - c0
    dr = fr - r0

    corners = [
        (r0, c0, (1 - dr) * (1 - dc)),
        (r0, c1, (1 - dr) * dc),
        (r1, c0, dr * (1 - dc)),
        (r1, c1, dr * dc),
    ]
    total = np.zeros(len(fc))
    weight = np.zeros(len(fc))
    for r, c, w in corners:
        v = raster.array[r, c]
        ok = ~np.isnan(v)
        total[ok] += v[ok] * w[ok]
        weight[ok] += w[ok]
    with np.errstate(invalid="ignore", divide="ignore"):
        values[inside] = np.where(weight > 0, total / weight, np.nan)
    return values


def zonal_mean(raster: Raster, geometries) -> np.ndarray:
    """
    Mean of raster cells inside each geometry (NaN cells ignored).

    Cells are counted when their center falls inside the geometry; a
    geometry covering no valid cell gets NaN.
    """
    means = []
    for geom in geometries:
        if geom is None or geom.is_empty:
            means.append(np.nan)
            continue
        inside = geometry_mask(
            [geom], out_shape=raster.grid.shape, transform=raster.grid.transform, invert=True
        )
        values = raster.array[inside]
        values = values[~np.isnan(values)]
        means.append(float(values.mean()) if values.size else np.nan)
    return np.array(means)
