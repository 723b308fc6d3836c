"""
One-time import of ancillary layers: elevation and vector base layers.

The mean elevation of the urban area parameterises atmospheric correction
of every scene.
"""

import logging
import math
import zipfile
from pathlib import Path
from typing import Optional

import numpy as np
import rasterio
import requests
from rasterio.merge import merge
from tqdm import tqdm

from .errors import EmptyInputError
from .rasters import zonal_mean
from .storage import atomic_path, retry_io
from .workspace import Workspace

logger = logging.getLogger(__name__)

SRTM_URL = "https://e4ftl01.cr.usgs.gov/MEASURES/SRTMGL1.003/2000.02.11/{tile}.SRTMGL1.hgt.zip"
EARTHDATA_HOST = "urs.earthdata.nasa.gov"

# Base layers imported once per study area: name -> default minimum polygon area
BASE_LAYERS = {
    "neighborhoods": 0.0001,
    "canals": None,
    "watercourses": None,
    "railroads": None,
    "urban": None,
}


class EarthdataSession(requests.Session):
    """Session that keeps credentials across the Earthdata login redirect."""

    def rebuild_auth(self, prepared_request, response):
        headers = prepared_request.headers
        url = prepared_request.url
        if "Authorization" in headers:
            original = requests.utils.urlparse(response.request.url).hostname
            redirect = requests.utils.urlparse(url).hostname
            if original != redirect and redirect != EARTHDATA_HOST and original != EARTHDATA_HOST:
                del headers["Authorization"]


def srtm_tile_names(bbox: tuple[float, float, float, float]) -> list[str]:
    """
    Names of the 1-degree SRTM tiles covering a lon/lat bbox.

    Args:
        bbox: (min_lon, min_lat, max_lon, max_lat)

    Returns:
        Tile names such as "S32W065"
    """
    min_lon, min_lat, max_lon, max_lat = bbox
    names = []
    for lat in range(math.floor(min_lat), math.ceil(max_lat)):
        for lon in range(math.floor(min_lon), math.ceil(max_lon)):
            ns = "N" if lat >= 0 else "S"
            ew = "E" if lon >= 0 else "W"
            names.append(f"{ns}{abs(lat):02d}{ew}{abs(lon):03d}")
    return names


def download_srtm(
    bbox: tuple[float, float, float, float],
    dest_dir: Path,
    username: str,
    password: str,
) -> list[Path]:
    """
    Download SRTM 1 arc-second tiles from the LP DAAC data pool.

    Requires an Earthdata account with the LP DAAC application approved.

    Returns:
        Paths of the extracted .hgt tiles
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    session = EarthdataSession()
    session.auth = (username, password)

    tiles = []
    for tile in tqdm(srtm_tile_names(bbox), desc="Downloading SRTM tiles"):
        hgt_path = dest_dir / f"{tile}.hgt"
        if hgt_path.exists():
            tiles.append(hgt_path)
            continue

        url = SRTM_URL.format(tile=tile)
        response = retry_io(session.get, url, timeout=120, item=tile)
        if response.status_code == 404:
            # Ocean tiles do not exist
            logger.info(f"  No SRTM tile {tile}")
            continue
        response.raise_for_status()

        zip_path = dest_dir / f"{tile}.zip"
        with atomic_path(zip_path) as tmp:
            with open(tmp, "wb") as f:
                f.write(response.content)
        with zipfile.ZipFile(zip_path, "r") as zf:
            member = next(n for n in zf.namelist() if n.endswith(".hgt"))
            with atomic_path(hgt_path) as tmp:
                with zf.open(member) as src, open(tmp, "wb") as dst:
                    dst.write(src.read())
        zip_path.unlink()
        tiles.append(hgt_path)

    logger.info(f"SRTM tiles available: {len(tiles)}")
    return tiles


def import_dem(
    tile_paths: list[Path],
    workspace: Workspace,
    mosaic_path: Path,
    name: str = "dem",
) -> str:
    """
    Mosaic DEM tiles and import them onto the workspace grid (bilinear).
    """
    if not tile_paths:
        raise EmptyInputError("No DEM tiles to import", item=name)

    if len(tile_paths) == 1:
        source = Path(tile_paths[0])
    else:
        logger.info(f"Merging {len(tile_paths)} DEM tiles...")
        datasets = [rasterio.open(p) for p in tile_paths]
        try:
            mosaic, transform = merge(datasets)
            profile = datasets[0].profile
        finally:
            for ds in datasets:
                ds.close()
        profile.update(
            driver="GTiff",
            height=mosaic.shape[1],
            width=mosaic.shape[2],
            transform=transform,
            compress="lzw",
        )
        with atomic_path(mosaic_path) as tmp:
            with rasterio.open(tmp, "w", **profile) as dst:
                dst.write(mosaic)
        source = mosaic_path

    workspace.import_raster(source, name, resampling="bilinear")
    return name


def import_vectors(
    workspace: Workspace,
    sources: dict[str, Path],
    min_areas: Optional[dict[str, Optional[float]]] = None,
) -> list[str]:
    """
    Import vector base layers (neighborhoods, canals, watercourses, ...).

    Args:
        workspace: Target workspace
        sources: Layer name -> file (shapefile, KML, GeoJSON, ...)
        min_areas: Layer name -> minimum polygon area kept (map units²)
    """
    min_areas = {**BASE_LAYERS, **(min_areas or {})}
    names = []
    for name, path in sources.items():
        names.append(workspace.import_vector(path, name, min_area=min_areas.get(name)))
    return names


def mean_elevation(
    workspace: Workspace,
    dem: str = "dem",
    polygons: str = "urban",
    where: Optional[str] = None,
) -> float:
    """
    Average elevation inside the (optionally filtered) urban polygons.

    Args:
        workspace: Workspace holding the DEM and polygon layer
        dem: DEM layer name
        polygons: Polygon layer name
        where: pandas query selecting features, e.g. "FNA == 'Gran Cordoba'"

    Returns:
        Mean elevation in DEM units
    """
    gdf = workspace.vector(polygons)
    if where:
        gdf = gdf.query(where)
    if gdf.empty:
        raise EmptyInputError("No polygons selected for mean elevation", item=polygons)

    area = gdf.geometry.union_all()
    value = zonal_mean(workspace.get(dem), [area])[0]
    if np.isnan(value):
        raise EmptyInputError("Urban polygons cover no DEM cells", item=polygons)
    logger.info(f"Mean elevation of '{polygons}': {value:.1f}")
    return float(value)
