"""
Tests for binary maps, per-polygon means and the rendered figures.
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from nichemap.config import RenderConfig
from nichemap.errors import StageInputError
from nichemap.rasters import GridSpec, Raster
from nichemap.render import binarize, plot_binary, plot_mean_and_sd, plot_neighbourhoods, require_inputs, zonal_mean

CRS = "EPSG:32720"
FAST = RenderConfig(dpi=50)


@pytest.fixture
def mean_raster():
    grid = GridSpec.from_bounds((0, 0, 30, 30), 10, CRS)
    arr = np.array([[0.1, 0.5, 0.9], [0.49, 0.51, np.nan], [0.0, 1.0, 0.3]])
    return Raster(arr, grid, name="mean")


@pytest.fixture
def polygons():
    return gpd.GeoDataFrame(
        {"name": ["west", "east", "outside"]},
        geometry=[box(0, 0, 10, 30), box(20, 0, 30, 30), box(100, 100, 110, 110)],
        crs=CRS,
    )


def test_binarize_at_half(mean_raster):
    binary = binarize(mean_raster, 0.5).array
    expected = np.array([[0, 1, 1], [0, 1, np.nan], [0, 1, 0]])
    np.testing.assert_array_equal(binary, expected)


def test_binary_presence_shrinks_as_threshold_rises(mean_raster):
    counts = [np.nansum(binarize(mean_raster, t).array) for t in np.linspace(0, 1, 21)]
    assert all(a >= b for a, b in zip(counts, counts[1:]))
    assert np.isnan(binarize(mean_raster, 0.0).array[1, 2])


def test_zonal_mean(mean_raster, polygons):
    zonal = zonal_mean(mean_raster, polygons)
    assert zonal["mean_probability"][0] == pytest.approx(np.mean([0.1, 0.49, 0.0]))
    assert zonal["mean_probability"][1] == pytest.approx(np.mean([0.9, 0.3]))
    assert np.isnan(zonal["mean_probability"][2])


def test_maps_are_written(tmp_path, mean_raster, polygons):
    sd = mean_raster.with_array(mean_raster.array * 0.1, name="sd")
    paths = [
        plot_mean_and_sd(mean_raster, sd, polygons, tmp_path / "mean_sd.png", "Test", FAST),
        plot_neighbourhoods(zonal_mean(mean_raster, polygons), tmp_path / "zonal.png", config=FAST),
        plot_binary(binarize(mean_raster, 0.5), polygons, tmp_path / "binary.png", config=FAST),
    ]
    for path in paths:
        assert path.exists() and path.stat().st_size > 0
    assert sorted(p.name for p in tmp_path.iterdir()) == ["binary.png", "mean_sd.png", "zonal.png"]


def test_missing_input_is_named(tmp_path):
    existing = tmp_path / "mean.tif"
    existing.write_bytes(b"")
    with pytest.raises(StageInputError, match="polygons.gpkg"):
        require_inputs(existing, tmp_path / "polygons.gpkg")
