"""
Tests for the workspace and per-scene predictor derivation on a synthetic scene.
"""

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from shapely.geometry import LineString

from nichemap.config import Region, SceneConfig
from nichemap.errors import NicheMapError
from nichemap.predictors import PredictorStack
from nichemap.rasters import GridSpec, Raster
from nichemap.scene import process_scene
from nichemap.workspace import Workspace

CRS = "EPSG:32720"
X0, Y0 = 380000.0, 6520000.0


@pytest.fixture
def scene_file(tmp_path):
    """A 4-band 40 x 40 image at 10 m: vegetated west, built-up east."""
    rng = np.random.default_rng(11)
    cols = np.tile(np.arange(40), (40, 1))
    west = cols < 20
    red = np.where(west, 200, 700) + rng.integers(0, 50, (40, 40))
    green = np.where(west, 300, 600) + rng.integers(0, 50, (40, 40))
    blue = np.where(west, 250, 650) + rng.integers(0, 50, (40, 40))
    nir = np.where(west, 1200, 500) + rng.integers(0, 50, (40, 40))
    path = tmp_path / "spot6_20151210.tif"
    transform = rasterio.transform.from_origin(X0, Y0 + 400, 10, 10)
    with rasterio.open(path, "w", driver="GTiff", height=40, width=40, count=4, dtype="uint16",
                       crs=CRS, transform=transform) as dst:
        for i, band in enumerate((red, green, blue, nir), start=1):
            dst.write(band.astype("uint16"), i)
    return path


@pytest.fixture
def workspace(tmp_path):
    ws = Workspace(Region(crs=CRS, resolution=10.0))
    canal = gpd.GeoDataFrame(geometry=[LineString([(X0, Y0 + 200), (X0 + 400, Y0 + 200)])], crs=CRS)
    path = tmp_path / "canals.gpkg"
    canal.to_file(path, driver="GPKG")
    ws.import_vector(path, "canals")
    return ws


def test_workspace_compute_and_remove():
    grid = GridSpec.from_bounds((0, 0, 50, 50), 10, CRS)
    ws = Workspace(Region(crs=CRS, resolution=10.0), grid)
    ws.add(Raster(np.full(grid.shape, 0.2), grid), "red")
    ws.add(Raster(np.full(grid.shape, 0.6), grid), "nir")
    ws.compute("ndvi", ["red", "nir"], "ndvi")
    assert ws.get("ndvi").array[0, 0] == pytest.approx(0.5)
    assert sorted(ws.remove("n*")) == ["ndvi", "nir"]
    assert ws.layers() == ["red"]


def test_workspace_rejects_unknown_operation():
    grid = GridSpec.from_bounds((0, 0, 50, 50), 10, CRS)
    ws = Workspace(Region(crs=CRS, resolution=10.0), grid)
    ws.add(Raster(np.ones(grid.shape), grid), "a")
    with pytest.raises(ValueError):
        ws.compute("fourier", ["a"], "b")
    with pytest.raises(NicheMapError):
        ws.compute("average", ["a"], "b")


def test_process_scene_exports_aligned_predictors(scene_file, workspace, tmp_path):
    config = SceneConfig(window_size=3, n_classes=3, cluster_sample=2, texture_levels=8, n_jobs=1)
    out_dir = tmp_path / "scenes" / "20151210" / "predictors"
    exported = process_scene(workspace, scene_file, "20151210", config, out_dir, line_layers=("canals", "railroads"))

    classification = tmp_path / "scenes" / "20151210" / "classification" / "scene_20151210_class_3c.tif"
    assert exported["scene_20151210_class_3c"] == classification
    assert classification.exists()

    stack = PredictorStack.from_directory(out_dir)
    assert len(stack) == len(exported) - 1
    assert "scene_20151210_ndvi" in stack.names
    assert "scene_20151210_ndvi_average_3" in stack.names
    assert "scene_20151210.nir_corr_entropy_3" in stack.names
    assert "scene_20151210_class_3c_intersp_3" in stack.names
    assert "distance_canals" in stack.names
    assert "distance_railroads" not in stack.names

    ndvi = stack.layers["scene_20151210_ndvi"]
    assert np.nanmean(ndvi[:, :20]) > np.nanmean(ndvi[:, 20:])
    assert np.nanmin(stack.layers["distance_canals"]) == 0

    # scene layers are dropped; distance to lines is kept for the next scene
    assert workspace.layers() == ["distance_canals"]
