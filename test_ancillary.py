"""
Tests for the ancillary import: SRTM tile names, DEM mosaic and urban elevation.
"""

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from shapely.geometry import box

from nichemap import ancillary
from nichemap.config import Region
from nichemap.errors import EmptyInputError
from nichemap.workspace import Workspace

CRS = "EPSG:32720"
X0, Y0 = 380000.0, 6520000.0


def _tile(path, x0, value):
    transform = rasterio.transform.from_origin(x0, Y0 + 100, 10, 10)
    with rasterio.open(path, "w", driver="GTiff", height=10, width=10, count=1, dtype="int16",
                       crs=CRS, transform=transform, nodata=-32768) as dst:
        dst.write(np.full((10, 10), value, dtype="int16"), 1)
    return path


def test_srtm_tile_names():
    assert ancillary.srtm_tile_names((-64.5, -31.6, -63.9, -31.2)) == ["S32W065", "S32W064"]
    assert ancillary.srtm_tile_names((10.2, 45.1, 10.8, 45.9)) == ["N45E010"]


def test_download_skips_missing_tiles(tmp_path, monkeypatch):
    class Missing:
        status_code = 404

    monkeypatch.setattr(ancillary.EarthdataSession, "get", lambda self, url, timeout=None: Missing())
    assert ancillary.download_srtm((-64.5, -31.6, -64.1, -31.2), tmp_path, "user", "secret") == []


def test_dem_mosaic_and_mean_elevation(tmp_path):
    tiles = [_tile(tmp_path / "a.tif", X0, 400), _tile(tmp_path / "b.tif", X0 + 100, 500)]
    workspace = Workspace(Region(crs=CRS, resolution=10.0))
    ancillary.import_dem(tiles, workspace, tmp_path / "mosaic.tif")

    assert (tmp_path / "mosaic.tif").exists()
    assert workspace.grid.shape == (10, 20)

    urban = gpd.GeoDataFrame(
        {"name": ["west", "east"]},
        geometry=[box(X0 + 10, Y0 + 10, X0 + 60, Y0 + 90), box(X0 + 140, Y0 + 10, X0 + 190, Y0 + 90)],
        crs=CRS,
    )
    workspace.add_vector(urban, "urban")
    assert ancillary.mean_elevation(workspace, where="name == 'west'") == pytest.approx(400, abs=1)
    assert ancillary.mean_elevation(workspace) == pytest.approx(450, abs=1)
    with pytest.raises(EmptyInputError):
        ancillary.mean_elevation(workspace, where="name == 'north'")


def test_import_dem_needs_tiles(tmp_path):
    with pytest.raises(EmptyInputError):
        ancillary.import_dem([], Workspace(Region(crs=CRS)), tmp_path / "mosaic.tif")
