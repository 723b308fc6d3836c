"""
Stage entry points of the niche mapping workflow.

Each stage reads its inputs through the manifest of the working directory,
writes its artifacts, registers them, and returns. Calibration and
validation stop at decision checkpoints; the following stage resumes from
the decision the operator supplies.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import geopandas as gpd
import pandas as pd

from . import accessible, ancillary, occurrence, render, scene, validation
from .calibration import (
    CalibrationRun,
    CalibrationStage,
    calibrate_grid,
    fit_final_model,
    parse_candidate_id,
    prepare_swd,
    read_decision,
    reduce_variables,
    remove_correlated,
    write_decision_artifact,
)
from .config import WorkflowConfig
from .engine import make_engine
from .errors import NicheMapError, StageInputError
from .evaluation import SelectionResult, permutation_importance, select_candidates
from .manifest import Manifest
from .predictors import PredictorStack, mask_to_area
from .rasters import read_raster, write_raster
from .storage import atomic_path, new_run_id, read_json, write_csv, write_json
from .workspace import Workspace

logger = logging.getLogger(__name__)


def _banner(title: str) -> None:
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)


def _write_vector(gdf: gpd.GeoDataFrame, path: Path) -> Path:
    with atomic_path(path) as tmp:
        gdf.to_file(tmp, driver="GPKG")
    return path


# ---------------------------------------------------------------------------
# Ancillary data and scenes
# ---------------------------------------------------------------------------

def run_ancillary(
    config: WorkflowConfig,
    dem_tiles: list[Path],
    vectors: dict[str, Path],
    urban_layer: str = "urban",
    urban_where: Optional[str] = None,
    min_areas: Optional[dict[str, float]] = None,
) -> dict[str, Path]:
    """
    Import the DEM and base vector layers once for the study area.

    Writes ancillary/dem.tif, one GeoPackage per vector layer and
    ancillary/metadata.json (grid and mean urban elevation).
    """
    manifest = Manifest.load(config.workdir)
    out_dir = config.workdir / "ancillary"
    _banner("Importing ancillary data")

    logger.info("[1/3] Importing DEM...")
    workspace = Workspace(config.region)
    ancillary.import_dem(dem_tiles, workspace, out_dir / "dem_mosaic.tif")
    paths = {"dem": manifest.register("ancillary/dem", workspace.export("dem", out_dir / "dem.tif"), overwrite=True)}

    logger.info(f"[2/3] Importing {len(vectors)} vector layers...")
    for name in ancillary.import_vectors(workspace, vectors, min_areas):
        path = _write_vector(workspace.vector(name), out_dir / f"{name}.gpkg")
        paths[name] = manifest.register(f"ancillary/vector/{name}", path, overwrite=True)

    logger.info("[3/3] Mean elevation of the urban area...")
    elevation = None
    if urban_layer in workspace.vectors():
        elevation = ancillary.mean_elevation(workspace, "dem", urban_layer, where=urban_where)
    else:
        logger.warning(f"No '{urban_layer}' layer imported; mean elevation not computed")
    metadata = {
        "mean_elevation": elevation,
        "crs": config.region.crs,
        "resolution": config.region.resolution,
        "bounds": list(workspace.grid.bounds),
    }
    paths["metadata"] = manifest.register(
        "ancillary/metadata", write_json(metadata, out_dir / "metadata.json"), overwrite=True
    )
    return paths


def load_workspace(config: WorkflowConfig, manifest: Manifest) -> tuple[Workspace, Optional[float]]:
    """Rebuild the workspace from the ancillary artifacts."""
    workspace = Workspace(config.region)
    workspace.import_raster(manifest.require("ancillary/dem"), "dem", resampling="bilinear")
    for name in manifest.names("ancillary/vector/"):
        workspace.import_vector(manifest.require(name), name.rsplit("/", 1)[-1])
    metadata = read_json(manifest.require("ancillary/metadata"))
    return workspace, metadata.get("mean_elevation")


def run_scene(config: WorkflowConfig, scene_path: Path, date: str) -> dict[str, Path]:
    """Derive and export all predictors for one scene."""
    manifest = Manifest.load(config.workdir)
    workspace, elevation = load_workspace(config, manifest)
    out_dir = config.workdir / "scenes" / date / "predictors"
    exported = scene.process_scene(workspace, scene_path, date, config.scene, out_dir, elevation=elevation)
    for name, path in exported.items():
        manifest.register(f"scene/{date}/{name}", path, overwrite=True)
    manifest.register("predictors", out_dir, overwrite=True)
    return exported


# ---------------------------------------------------------------------------
# Occurrences
# ---------------------------------------------------------------------------

def run_occurrence(config: WorkflowConfig, records_path: Path) -> dict[str, Path]:
    """
    Label, project and split sampling records; define the accessible area.
    """
    manifest = Manifest.load(config.workdir)
    occ = config.occurrence
    out_dir = config.workdir / "occurrence"
    _banner(f"Preparing occurrences for {occ.species}")

    logger.info(f"[1/3] Loading records and summarising weeks {list(occ.weeks)}...")
    records = occurrence.load_sampling_records(records_path)
    sets = occurrence.prepare_occurrences(records, occ, config.region.crs)

    logger.info("[2/3] Writing calibration sets...")
    paths = occurrence.write_calibration_sets(sets["joint"], sets["train"], sets["test"], out_dir)
    paths["records"] = write_csv(sets["records"], out_dir / "records.csv")

    logger.info(f"[3/3] Accessible area ({occ.buffer_radius:g} m buffer)...")
    joint = sets["joint"]
    area = accessible.define_accessible_area(joint["longitude"], joint["latitude"], occ.buffer_radius, config.region.crs)
    if not area.contains_all(joint["longitude"], joint["latitude"]):
        raise NicheMapError("Accessible area does not contain every presence", item="accessible area")
    paths["accessible_area"] = area.to_file(out_dir / "accessible_area.geojson")

    for name, path in paths.items():
        manifest.register(f"occurrence/{name}", path, overwrite=True)
    return paths


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

@dataclass
class CalibrationOutcome:
    run_id: str
    out_dir: Path
    selection: SelectionResult
    decision_path: Path


def _calibration_inputs(config: WorkflowConfig, manifest: Manifest, predictors_dir: Path, predictors: Optional[list[str]]):
    stack_g = PredictorStack.from_directory(predictors_dir)
    if predictors:
        stack_g = stack_g.select(predictors)
    area = accessible.AccessibleArea.from_file(manifest.require("occurrence/accessible_area"))
    stack_m = mask_to_area(stack_g, area)
    joint, train, test = (pd.read_csv(manifest.require(f"occurrence/{n}")) for n in ("joint", "train", "test"))
    cal = config.calibration
    swd = prepare_swd(stack_m, joint, train, test, cal.background_size, cal.seed)
    return stack_g, stack_m, swd


def run_calibration(
    config: WorkflowConfig,
    stage: str = "preliminary",
    predictors_dir: Optional[Path] = None,
) -> CalibrationOutcome:
    """
    Fit, evaluate and rank the candidate grid, then halt with a decision file.

    The preliminary stage uses every predictor; the final stage uses the
    predictors kept by variable reduction.
    """
    if stage not in ("preliminary", "final"):
        raise ValueError(f"Unknown calibration stage '{stage}'")
    manifest = Manifest.load(config.workdir)
    cal = config.calibration
    run_id = new_run_id(f"calibration_{stage}")
    out_dir = config.workdir / "calibration" / run_id
    _banner(f"Calibration ({stage}): {run_id}")

    predictors = None
    if stage == "final":
        reduction = read_json(manifest.require("reduction/selected_predictors"))
        predictors = reduction["predictors"]
        predictors_dir = Path(reduction["predictors_dir"])
        run = CalibrationRun(run_id, out_dir, CalibrationStage.VARIABLE_REDUCTION,
                             [f"variable_reduction:{reduction['run_id']}"])
    else:
        predictors_dir = Path(predictors_dir) if predictors_dir else manifest.require("predictors")
        run = CalibrationRun(run_id, out_dir)
    run.save()

    logger.info("[1/4] Loading predictors and occurrences...")
    stack_g, stack_m, swd = _calibration_inputs(config, manifest, predictors_dir, predictors)
    stack_m.to_directory(out_dir / "M_variables", fmt="AAIGrid")
    write_json({"predictors_dir": str(predictors_dir), "predictors": swd.predictors}, out_dir / "inputs.json")

    logger.info("[2/4] Fitting candidate models...")
    run.advance(CalibrationStage.CALIBRATING if stage == "preliminary" else CalibrationStage.FINAL_CALIBRATION)
    engine = make_engine(cal, out_dir / "engine", species=config.occurrence.species)
    table = calibrate_grid(
        engine, swd, stack_m, cal.reg_mults, cal.feature_classes, out_dir,
        omission=cal.omission_threshold, rand_percent=cal.rand_percent,
        iterations=cal.iterations, seed=cal.seed, n_jobs=cal.n_jobs,
    )

    logger.info("[3/4] Evaluating and selecting...")
    if stage == "preliminary":
        run.advance(CalibrationStage.EVALUATING)
    selection = select_candidates(table, cal.omission_threshold, cal.selection, cal.significance, cal.delta_aicc)

    logger.info("[4/4] Writing decision artifact...")
    decision_path = write_decision_artifact(selection, out_dir, run_id)
    run.advance(CalibrationStage.SELECTED if stage == "preliminary" else CalibrationStage.FINAL_SELECTION)
    manifest.register(f"calibration/{run_id}/evaluation", out_dir / "evaluation.csv")
    manifest.register(f"calibration/{run_id}/decision", decision_path)
    manifest.register(f"calibration/{stage}/decision", decision_path, overwrite=True)

    if selection.viable:
        logger.info(f"Best candidate: {selection.best}. Review {decision_path} and resume.")
    else:
        logger.warning(f"No viable model. Ranked candidates in {out_dir / 'candidates_ranked.csv'}")
    return CalibrationOutcome(run_id, out_dir, selection, decision_path)


def _resume_run(decision_path: Path, expected: CalibrationStage) -> tuple[dict, CalibrationRun]:
    decision = read_decision(decision_path)
    run = CalibrationRun.load(Path(decision_path).parent)
    if run.stage != expected:
        raise StageInputError(
            f"Decision belongs to a run at stage '{run.stage.value}', expected '{expected.value}'",
            item=str(decision_path),
        )
    return decision, run


def run_reduction(config: WorkflowConfig, decision_path: Path) -> Path:
    """
    Remove correlated, then low-contribution predictors for the chosen preliminary model.

    Writes selected_predictors.json under reduction/<run id>. The preliminary
    run is only read, so a failed reduction can be retried from the same
    decision file.
    """
    manifest = Manifest.load(config.workdir)
    cal = config.calibration
    decision, source = _resume_run(decision_path, CalibrationStage.SELECTED)
    reg_mult, features = parse_candidate_id(decision["selected"])
    inputs = read_json(source.out_dir / "inputs.json")
    run_id = new_run_id("reduction")
    out_dir = config.workdir / "reduction" / run_id
    run = CalibrationRun(run_id, out_dir, CalibrationStage.SELECTED, [f"selected:{source.run_id}"])
    run.save()
    _banner(f"Variable reduction for {decision['selected']}: {run_id}")

    _, _, swd = _calibration_inputs(config, manifest, Path(inputs["predictors_dir"]), inputs["predictors"])
    engine = make_engine(cal, out_dir / "engine", species=config.occurrence.species)

    def factory(names):
        return engine.fit(swd.train, swd.background, reg_mult, features, predictors=names)

    logger.info(f"[1/2] Removing predictors correlated above {cal.correlation_threshold} ({cal.correlation_method})...")
    model, correlated = remove_correlated(factory, swd, cal.correlation_threshold, cal.correlation_method, cal.seed)
    logger.info(f"[2/2] Removing predictors below {cal.contribution_threshold}% permutation importance...")
    model, low = reduce_variables(factory, swd, model, cal.contribution_threshold, cal.seed)

    importance = permutation_importance(model, swd.train, swd.background, seed=cal.seed)
    write_csv(importance.rename_axis("variable").reset_index(), out_dir / "permutation_importance.csv")
    path = write_json({
        "run_id": run_id,
        "source_run_id": source.run_id,
        "model": decision["selected"],
        "predictors_dir": inputs["predictors_dir"],
        "predictors": model.predictors,
        "removed_correlated": correlated,
        "removed_low_contribution": low,
    }, out_dir / "selected_predictors.json")
    run.advance(CalibrationStage.VARIABLE_REDUCTION)
    manifest.register(f"reduction/{run_id}/selected_predictors", path)
    manifest.register("reduction/selected_predictors", path, overwrite=True)
    logger.info(f"Kept {len(model.predictors)} predictors: {', '.join(model.predictors)}")
    return path


def run_final(config: WorkflowConfig, decision_path: Path):
    """Fit the replicate ensemble of the chosen final candidate and project it onto the full extent."""
    manifest = Manifest.load(config.workdir)
    cal = config.calibration
    decision, run = _resume_run(decision_path, CalibrationStage.FINAL_SELECTION)
    reg_mult, features = parse_candidate_id(decision["selected"])
    inputs = read_json(run.out_dir / "inputs.json")
    _banner(f"Final model {decision['selected']}")

    stack_g, _, swd = _calibration_inputs(config, manifest, Path(inputs["predictors_dir"]), inputs["predictors"])
    final_id = new_run_id("final")
    out_dir = config.workdir / "final" / final_id
    engine = make_engine(cal, out_dir / "engine", species=config.occurrence.species)
    final = fit_final_model(
        engine, swd, stack_g, reg_mult, features, out_dir,
        replicates=cal.replicates, replicate_type=cal.replicate_type,
        output_format=cal.output_format, run_jackknife=cal.jackknife, seed=cal.seed,
    )
    run.advance(CalibrationStage.FINAL_PROJECTION)
    for name, path in final.paths.items():
        manifest.register(f"final/{final_id}/{name}", path)
        manifest.register(f"final/{name}", path, overwrite=True)
    return final


# ---------------------------------------------------------------------------
# Validation and rendering
# ---------------------------------------------------------------------------

def run_validation(
    config: WorkflowConfig,
    positives: Path,
    negatives: Path,
    source_crs: Optional[str] = None,
    prediction: Optional[Path] = None,
) -> Path:
    """Compute the threshold table (the threshold decision artifact)."""
    manifest = Manifest.load(config.workdir)
    mean_path = Path(prediction) if prediction else manifest.require("final/mean")
    run_id = new_run_id("validation")
    out_dir = config.workdir / "validation" / run_id
    _banner(f"Threshold-dependent validation: {run_id}")

    mean = read_raster(mean_path)
    records = validation.load_validation_records(positives, negatives, mean.grid.crs.to_string(), source_crs)
    records = validation.extract_predictions(mean, records, method="bilinear").dropna(subset=["predicted"])
    table = validation.validate(records["presence"], records["predicted"])

    write_csv(records, out_dir / "predictions.csv")
    path = write_csv(table, out_dir / "thresholds.csv")
    manifest.register(f"validation/{run_id}/thresholds", path)
    manifest.register("validation/thresholds", path, overwrite=True)
    logger.info(f"Thresholds written to {path}; pass --rule or --threshold to render")
    return path


def resolve_threshold(manifest: Manifest, threshold: Optional[float], rule: Optional[str]) -> float:
    """
    The operator's threshold: an explicit value or a rule from the threshold table.

    Raises:
        StageInputError: if neither or both are given, or the table is missing
    """
    if (threshold is None) == (rule is None):
        raise StageInputError("Give exactly one of an explicit threshold or a rule name", item="threshold")
    if threshold is not None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be within [0, 1], got {threshold}")
        return float(threshold)
    if rule not in validation.THRESHOLD_RULES:
        raise ValueError(f"Unknown threshold rule '{rule}'. Choose from {list(validation.THRESHOLD_RULES)}")
    path = manifest.require("validation/thresholds")
    table = pd.read_csv(path)
    match = table.loc[table["rule"] == rule, "threshold"]
    if match.empty:
        raise StageInputError(f"Threshold table has no row for rule '{rule}'", item=str(path))
    return float(match.iloc[0])


def run_render(
    config: WorkflowConfig,
    polygons_path: Path,
    threshold: Optional[float] = None,
    rule: Optional[str] = None,
    title: str = "",
) -> dict[str, Path]:
    """Render mean/sd, per-polygon mean and binary maps."""
    manifest = Manifest.load(config.workdir)
    value = resolve_threshold(manifest, threshold, rule)
    mean_path = manifest.require("final/mean")
    sd_path = manifest.require("final/stddev")
    render.require_inputs(mean_path, sd_path, polygons_path)

    run_id = new_run_id("render")
    out_dir = config.workdir / "maps" / run_id
    _banner(f"Rendering maps at threshold {value:.3f}: {run_id}")

    mean = read_raster(mean_path)
    sd = read_raster(sd_path)
    polygons = gpd.read_file(polygons_path)

    logger.info("[1/3] Mean and standard deviation...")
    paths = {"mean_sd": render.plot_mean_and_sd(mean, sd, polygons, out_dir / "mean_sd.png", title, config.render)}

    logger.info("[2/3] Mean probability per polygon...")
    zonal = render.zonal_mean(mean, polygons)
    paths["zonal"] = _write_vector(zonal, out_dir / "zonal_mean.gpkg")
    paths["zonal_map"] = render.plot_neighbourhoods(zonal, out_dir / "zonal_mean.png", title=title, config=config.render)

    logger.info("[3/3] Binary presence map...")
    binary = render.binarize(mean, value)
    paths["binary"] = write_raster(binary, out_dir / "binary.tif", dtype="float32")
    paths["binary_map"] = render.plot_binary(binary, polygons, out_dir / "binary.png", title=title, config=config.render)
    write_json({"threshold": value, "rule": rule}, out_dir / "threshold.json")

    for name, path in paths.items():
        manifest.register(f"maps/{run_id}/{name}", path)
    return paths
