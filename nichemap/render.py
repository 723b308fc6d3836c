"""
Output maps: mean / uncertainty, per-neighbourhood mean and binary presence.
"""

import logging
from pathlib import Path
from typing import Optional

import matplotlib

matplotlib.use("Agg")

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
from matplotlib.colors import BoundaryNorm, ListedColormap

from .config import RenderConfig
from .errors import StageInputError
from .rasters import Raster, zonal_mean as raster_zonal_mean
from .storage import atomic_path

logger = logging.getLogger(__name__)


def require_inputs(*paths: str | Path) -> None:
    """Raise StageInputError naming the first input file that does not exist."""
    for path in paths:
        if path is None or not Path(path).exists():
            raise StageInputError("Render input not found", item=str(path))


def binarize(raster: Raster, threshold: float) -> Raster:
    """1 where value >= threshold, 0 below, NaN kept."""
    arr = raster.array
    out = np.where(np.isnan(arr), np.nan, (arr >= threshold).astype(float))
    return raster.with_array(out, name=f"{raster.name}_binary")


def zonal_mean(raster: Raster, polygons: gpd.GeoDataFrame, column: str = "mean_probability") -> gpd.GeoDataFrame:
    """Copy of `polygons` (in the raster CRS) with the mean raster value per polygon."""
    zones = polygons.to_crs(raster.grid.crs)
    zones[column] = raster_zonal_mean(raster, zones.geometry)
    n_empty = int(zones[column].isna().sum())
    if n_empty:
        logger.info(f"{n_empty} polygons cover no cell with data")
    return zones


def _extent(raster: Raster) -> tuple[float, float, float, float]:
    west, south, east, north = raster.grid.bounds
    return (west, east, south, north)


def _save(fig, path: Path, dpi: int) -> Path:
    path = Path(path)
    with atomic_path(path) as tmp:
        fig.savefig(tmp, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Saved map: {path}")
    return path


def _raster_panel(ax, raster: Raster, polygons: Optional[gpd.GeoDataFrame], breaks, palette: str, title: str):
    cmap = plt.get_cmap(palette, len(breaks) - 1)
    norm = BoundaryNorm(breaks, cmap.N)
    im = ax.imshow(raster.array, extent=_extent(raster), cmap=cmap, norm=norm, interpolation="nearest")
    if polygons is not None:
        polygons.to_crs(raster.grid.crs).boundary.plot(ax=ax, color="0.2", linewidth=0.5)
    ax.set_title(title, fontsize=10)
    ax.set_axis_off()
    return im


def plot_mean_and_sd(
    mean: Raster,
    sd: Raster,
    polygons: Optional[gpd.GeoDataFrame],
    path: str | Path,
    title: str = "",
    config: RenderConfig = RenderConfig(),
) -> Path:
    """Side-by-side mean prediction and standard deviation with fixed breaks."""
    fig, axes = plt.subplots(1, 2, figsize=(12, 6))
    im_mean = _raster_panel(axes[0], mean, polygons, config.mean_breaks, config.mean_palette,
                            f"{title} - Average Prediction".strip(" -"))
    im_sd = _raster_panel(axes[1], sd, polygons, config.sd_breaks, config.sd_palette,
                          f"{title} - Standard Deviation".strip(" -"))
    fig.colorbar(im_mean, ax=axes[0], orientation="horizontal", fraction=0.05, pad=0.02)
    fig.colorbar(im_sd, ax=axes[1], orientation="horizontal", fraction=0.05, pad=0.02)
    return _save(fig, path, config.dpi)


def plot_neighbourhoods(
    zonal: gpd.GeoDataFrame,
    path: str | Path,
    column: str = "mean_probability",
    title: str = "",
    config: RenderConfig = RenderConfig(),
) -> Path:
    """Choropleth of the per-polygon mean in equal-interval classes; no-data polygons in white."""
    values = zonal[column].to_numpy(dtype=float)
    finite = values[np.isfinite(values)]
    lo, hi = (finite.min(), finite.max()) if finite.size else (0.0, 1.0)
    if hi <= lo:
        hi = lo + 1e-6
    breaks = np.linspace(lo, hi, config.zonal_classes + 1)
    cmap = plt.get_cmap(config.zonal_palette, config.zonal_classes)
    norm = BoundaryNorm(breaks, cmap.N)

    fig, ax = plt.subplots(figsize=(8, 8))
    zonal.plot(
        column=column, ax=ax, cmap=cmap, norm=norm, edgecolor="0.2", linewidth=0.3,
        missing_kwds={"color": "white", "edgecolor": "0.2", "linewidth": 0.3},
    )
    fig.colorbar(plt.cm.ScalarMappable(norm=norm, cmap=cmap), ax=ax, fraction=0.04, pad=0.02)
    ax.set_title(title or "Mean probability per neighbourhood", fontsize=10)
    ax.set_axis_off()
    return _save(fig, path, config.dpi)


def plot_binary(
    binary: Raster,
    polygons: Optional[gpd.GeoDataFrame],
    path: str | Path,
    title: str = "",
    config: RenderConfig = RenderConfig(),
) -> Path:
    """Presence / absence map with two classes from the reversed RdBu palette."""
    palette = plt.get_cmap(config.binary_palette)
    cmap = ListedColormap([palette(0.15), palette(0.85)])
    cmap.set_bad("white")
    norm = BoundaryNorm([-0.5, 0.5, 1.5], cmap.N)

    fig, ax = plt.subplots(figsize=(8, 8))
    im = ax.imshow(binary.array, extent=_extent(binary), cmap=cmap, norm=norm, interpolation="nearest")
    if polygons is not None:
        polygons.to_crs(binary.grid.crs).boundary.plot(ax=ax, color="0.2", linewidth=0.5)
    cbar = fig.colorbar(im, ax=ax, ticks=[0, 1], fraction=0.04, pad=0.02)
    cbar.ax.set_yticklabels(["Absence", "Presence"])
    ax.set_title(title or "Predicted presence", fontsize=10)
    ax.set_axis_off()
    return _save(fig, path, config.dpi)
