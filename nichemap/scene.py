"""
Per-scene predictor derivation from a multispectral image.

Import bands, convert to radiance, correct to reflectance, then derive
spectral, textural and contextual predictors and export them as GeoTIFFs.
"""

import logging
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .config import SceneConfig
from .errors import NicheMapError
from .workspace import Workspace

logger = logging.getLogger(__name__)

TEXTURE_METHODS = ("entropy", "contrast", "correlation")
DIVERSITY_METHODS = ("shannon", "simpson")
CONTEXT_METHODS = {"richness": "rich", "mode": "mode", "interspersion": "intersp"}
LINE_LAYERS = ("canals", "watercourses", "railroads")


def scene_prefix(date: str) -> str:
    return f"scene_{date}"


def import_scene(workspace: Workspace, path: Path, date: str, config: SceneConfig) -> dict[str, str]:
    """Import the scene bands and name them by color. Returns color -> layer."""
    prefix = scene_prefix(date)
    colors = sorted(config.bands, key=lambda c: config.bands[c])
    indexes = [config.bands[c] for c in colors]
    names = workspace.import_raster(path, prefix, bands=indexes, resampling="bilinear")

    layers = {}
    for color, imported in zip(colors, names):
        layer = f"{prefix}.{color}"
        workspace.add(workspace.get(imported), layer)
        workspace.remove(imported)
        layers[color] = layer
    return layers


def correct_bands(workspace: Workspace, bands: dict[str, str], config: SceneConfig) -> dict[str, str]:
    """DN -> TOA radiance -> DOS1 surface reflectance, per band."""
    corrected = {}
    for color, layer in bands.items():
        if color not in config.gains or color not in config.esun:
            raise NicheMapError("No gain / ESUN configured for band", item=layer)
        rad = workspace.compute("radiance", [layer], f"{layer}_rad", gain=config.gains[color], bias=config.bias)
        corrected[color] = workspace.compute(
            "dos", [rad], f"{layer}_corr",
            esun=config.esun[color],
            sun_elevation=config.sun_elevation,
            earth_sun_distance=config.earth_sun_distance,
        )
    return corrected


def process_scene(
    workspace: Workspace,
    scene_path: str | Path,
    date: str,
    config: SceneConfig,
    out_dir: str | Path,
    line_layers: tuple[str, ...] = LINE_LAYERS,
    elevation: Optional[float] = None,
) -> dict[str, Path]:
    """
    Derive all predictors for one scene and export them.

    Args:
        workspace: Workspace holding the ancillary layers
        scene_path: Multispectral image file
        date: Scene date (YYYYMMDD), used in layer names
        config: Scene settings
        out_dir: Directory receiving one GeoTIFF per predictor
        line_layers: Vector layers to convert into distance rasters
        elevation: Mean elevation of the area, recorded with the scene

    Returns:
        Predictor name -> exported path
    """
    scene_path = Path(scene_path)
    out_dir = Path(out_dir)
    prefix = scene_prefix(date)
    size = config.window_size
    predictors: list[str] = []

    logger.info("=" * 60)
    logger.info(f"Processing scene {scene_path.name} ({date})")
    if elevation is not None:
        logger.info(f"  Mean elevation of study area: {elevation:.1f}")
    logger.info("=" * 60)

    logger.info("[1/8] Importing bands...")
    bands = import_scene(workspace, scene_path, date, config)

    logger.info("[2/8] Radiometric and atmospheric correction...")
    corrected = correct_bands(workspace, bands, config)
    predictors.extend(corrected.values())

    logger.info("[3/8] Spectral indices...")
    ndvi = workspace.compute("ndvi", [corrected["red"], corrected["nir"]], f"{prefix}_ndvi")
    ndwi = workspace.compute("ndwi", [corrected["green"], corrected["nir"]], f"{prefix}_ndwi")
    for index in (ndvi, ndwi):
        predictors.append(workspace.compute("average", [index], f"{index}_average_{size}", size=size))
        predictors.append(workspace.compute("stddev", [index], f"{index}_sd_{size}", size=size))
    predictors.extend([ndvi, ndwi])

    logger.info("[4/8] Texture over NIR...")
    for method in tqdm(TEXTURE_METHODS, desc="Texture"):
        predictors.append(workspace.compute(
            "texture", [corrected["nir"]], f"{corrected['nir']}_{method}_{size}",
            size=size, method=method, levels=config.texture_levels,
            tile_size=config.tile_size, n_jobs=config.n_jobs,
        ))

    logger.info(f"[5/8] Unsupervised classification ({config.n_classes} classes)...")
    classes = workspace.compute(
        "classify", list(corrected.values()) + [ndvi, ndwi], f"{prefix}_class_{config.n_classes}c",
        n_classes=config.n_classes, sample_step=config.cluster_sample, seed=config.seed,
    )

    logger.info("[6/8] Distance to classes, diversity and context...")
    for value in range(1, config.n_classes + 1):
        mask = workspace.compute("class_mask", [classes], f"class_{value}", value=value)
        predictors.append(workspace.compute("distance", [mask], f"distance_class_{value}"))
    for method in DIVERSITY_METHODS:
        predictors.append(workspace.compute(method, [classes], f"{classes}_{method}_{size}", size=size))
    for method, suffix in CONTEXT_METHODS.items():
        predictors.append(workspace.compute(method, [classes], f"{classes}_{suffix}_{size}", size=size))

    logger.info("[7/8] Distance to water and railroads...")
    for layer in line_layers:
        if layer not in workspace.vectors():
            logger.warning(f"  Vector layer '{layer}' not imported; skipping distance")
            continue
        target = f"distance_{layer}"
        if target not in workspace.layers():
            burned = workspace.compute("rasterize", [layer], f"{layer}_rast")
            workspace.compute("distance", [burned], target)
            workspace.remove(burned)
        predictors.append(target)

    logger.info(f"[8/8] Exporting {len(predictors)} predictors to {out_dir}...")
    exported = {}
    for name in tqdm(predictors, desc="Exporting"):
        exported[name] = workspace.export(name, out_dir / f"{name}.tif", fmt="GTiff")
    classification_dir = out_dir.parent / "classification"
    exported[classes] = workspace.export(classes, classification_dir / f"{classes}.tif", fmt="GTiff")

    # Keep ancillary layers (DEM, distance to lines) for the next scene
    workspace.remove(f"*{date}*")
    workspace.remove("class_*")
    workspace.remove("distance_class_*")

    logger.info(f"Scene {date} complete: {len(exported)} rasters exported")
    return exported
