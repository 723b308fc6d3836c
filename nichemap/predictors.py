"""
Predictor stacks: aligned environmental layers used for calibration and projection.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine
from rasterio.windows import from_bounds

from .accessible import AccessibleArea
from .errors import EmptyInputError, SpatialReferenceError
from .rasters import GridSpec, Raster, check_aligned, read_raster, sample, write_raster

logger = logging.getLogger(__name__)

RASTER_PATTERNS = ("*.tif", "*.tiff", "*.asc")


@dataclass
class PredictorStack:
    """Named 2-D arrays sharing one grid."""

    layers: dict[str, np.ndarray]
    grid: GridSpec

    def __post_init__(self):
        # Raster() rejects arrays that do not match the grid shape
        for name, arr in self.layers.items():
            Raster(arr, self.grid, name=name)

    @property
    def names(self) -> list[str]:
        return list(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    def raster(self, name: str) -> Raster:
        return Raster(self.layers[name], self.grid, name=name)

    @classmethod
    def from_rasters(cls, rasters: list[Raster]) -> "PredictorStack":
        grid = check_aligned(rasters)
        return cls({r.name: r.array for r in rasters}, grid)

    @classmethod
    def from_directory(cls, directory: str | Path, pattern: Optional[str] = None) -> "PredictorStack":
        """
        Load every raster in `directory` (sorted by name).

        Raises:
            EmptyInputError: if no raster matches
            SpatialReferenceError: if the layers are not aligned
        """
        directory = Path(directory)
        patterns = (pattern,) if pattern else RASTER_PATTERNS
        files = sorted({p for pat in patterns for p in directory.glob(pat)})
        if not files:
            raise EmptyInputError(f"No predictor rasters in {directory}", item=str(directory))
        rasters = [read_raster(f) for f in files]
        stack = cls.from_rasters(rasters)
        logger.info(f"Loaded {len(stack)} predictors from {directory} ({stack.grid.width} x {stack.grid.height})")
        return stack

    def to_directory(self, directory: str | Path, fmt: str = "AAIGrid") -> list[Path]:
        """Write one file per layer; ASCII grids get a .prj sidecar."""
        directory = Path(directory)
        suffix = ".asc" if fmt == "AAIGrid" else ".tif"
        return [write_raster(self.raster(name), directory / f"{name}{suffix}", fmt=fmt) for name in self.names]

    def select(self, names: list[str]) -> "PredictorStack":
        unknown = [n for n in names if n not in self.layers]
        if unknown:
            raise KeyError(f"Unknown predictors: {unknown}")
        return PredictorStack({n: self.layers[n] for n in names}, self.grid)

    def extract(self, xs, ys, method: str = "nearest") -> pd.DataFrame:
        """Predictor values at map coordinates, one column per layer."""
        return pd.DataFrame({name: sample(self.raster(name), xs, ys, method=method) for name in self.names})

    def valid_mask(self) -> np.ndarray:
        """Cells where every layer has data."""
        valid = np.ones(self.grid.shape, dtype=bool)
        for arr in self.layers.values():
            valid &= ~np.isnan(arr)
        return valid

    def background(self, n: int, seed: int = 1) -> tuple[np.ndarray, np.ndarray]:
        """
        Random cell centers (without replacement) where every layer has data.

        Fewer than `n` points are returned when the stack has fewer valid cells.
        """
        rows, cols = np.nonzero(self.valid_mask())
        if rows.size == 0:
            raise EmptyInputError("Predictor stack has no cell with data in every layer", item="background")
        if rows.size < n:
            logger.warning(f"Only {rows.size} valid cells available for {n} background points")
        rng = np.random.default_rng(seed)
        pick = rng.choice(rows.size, size=min(n, rows.size), replace=False)
        xs, ys = self.grid.cell_centers()
        return xs[rows[pick], cols[pick]], ys[rows[pick], cols[pick]]

    def to_matrix(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns:
            (X, valid): X has one row per valid cell and one column per layer;
            valid is the boolean cell mask the rows came from
        """
        valid = self.valid_mask()
        X = np.column_stack([arr[valid] for arr in self.layers.values()])
        return X, valid

    def from_matrix(self, values: np.ndarray, valid: np.ndarray, name: str = "prediction") -> Raster:
        """Put per-cell values (as returned for to_matrix rows) back on the grid."""
        out = np.full(self.grid.shape, np.nan)
        out[valid] = values
        return Raster(out, self.grid, name=name)

    def crop(self, bounds: tuple[float, float, float, float]) -> "PredictorStack":
        """Subset to the cells intersecting (xmin, ymin, xmax, ymax)."""
        window = from_bounds(*bounds, transform=self.grid.transform)
        row0 = max(0, int(np.floor(window.row_off + 1e-6)))
        col0 = max(0, int(np.floor(window.col_off + 1e-6)))
        row1 = min(self.grid.height, int(np.ceil(window.row_off + window.height - 1e-6)))
        col1 = min(self.grid.width, int(np.ceil(window.col_off + window.width - 1e-6)))
        if row1 <= row0 or col1 <= col0:
            raise EmptyInputError("Crop bounds do not overlap the predictor grid", item=str(bounds))
        transform = self.grid.transform * Affine.translation(col0, row0)
        grid = GridSpec(self.grid.crs, transform, col1 - col0, row1 - row0)
        return PredictorStack({n: arr[row0:row1, col0:col1].copy() for n, arr in self.layers.items()}, grid)

    def mask(self, geometry) -> "PredictorStack":
        """Set cells whose center lies outside `geometry` to NaN."""
        outside = geometry_mask([geometry], out_shape=self.grid.shape, transform=self.grid.transform)
        layers = {}
        for name, arr in self.layers.items():
            masked = arr.copy()
            masked[outside] = np.nan
            layers[name] = masked
        return PredictorStack(layers, self.grid)


def mask_to_area(stack: PredictorStack, area: AccessibleArea) -> PredictorStack:
    """
    The "M" stack: `stack` cropped to the accessible area and masked outside it.

    The input (the full "G" stack) is left untouched.
    """
    if stack.grid.crs != CRS.from_user_input(area.crs):
        raise SpatialReferenceError(
            f"Accessible area CRS {area.crs} differs from predictors {stack.grid.crs}", item="accessible area"
        )
    m_stack = stack.crop(area.bounds).mask(area.geometry)
    logger.info(f"Masked predictors to accessible area: {m_stack.grid.width} x {m_stack.grid.height} cells")
    return m_stack
