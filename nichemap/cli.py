"""
Command-line interface for the niche mapping workflow.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from . import ancillary, pipeline
from .config import load_config
from .errors import NicheMapError

logger = logging.getLogger(__name__)

# Exit code when calibration finds no candidate passing the selection criterion
EXIT_NO_VIABLE_MODEL = 3


def _name_path(value: str) -> tuple[str, Path]:
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"Expected NAME=PATH, got '{value}'")
    name, path = value.split("=", 1)
    return name, Path(path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nichemap",
        description="Map the urban distribution of a vector mosquito from satellite imagery and field surveys",
    )
    parser.add_argument("--config", "-c", type=Path, help="YAML configuration file")
    parser.add_argument("--workdir", "-w", type=Path, help="Working directory (default: from config or .)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="stage", required=True)

    p = sub.add_parser("ancillary", help="Import DEM and base vector layers")
    dem = p.add_mutually_exclusive_group(required=True)
    dem.add_argument("--dem", nargs="+", type=Path, help="DEM tile files")
    dem.add_argument("--srtm-bbox", nargs=4, type=float, metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"),
                     help="Download SRTM tiles (needs EARTHDATA_USERNAME / EARTHDATA_PASSWORD)")
    p.add_argument("--vector", action="append", type=_name_path, default=[], metavar="NAME=PATH",
                   help="Vector layer to import (repeatable)")
    p.add_argument("--urban-layer", default="urban", help="Polygon layer for the mean elevation")
    p.add_argument("--urban-where", help="pandas query selecting urban polygons")

    p = sub.add_parser("scene", help="Derive predictors from one multispectral scene")
    p.add_argument("--scene", type=Path, required=True, help="Multispectral image")
    p.add_argument("--date", required=True, help="Scene date (YYYYMMDD)")

    p = sub.add_parser("occurrence", help="Prepare presence records and the accessible area")
    p.add_argument("--records", type=Path, required=True, help="Sampling table (tab or comma separated)")

    p = sub.add_parser("calibrate", help="Calibrate and rank candidate models (decision checkpoint)")
    p.add_argument("--stage", dest="stage_name", choices=["preliminary", "final"], default="preliminary")
    p.add_argument("--predictors", type=Path, help="Predictor directory (default: last processed scene)")

    p = sub.add_parser("reduce", help="Variable reduction for the chosen preliminary model")
    p.add_argument("--decision", type=Path, required=True, help="decision.json of a preliminary run")

    p = sub.add_parser("final", help="Final replicate ensemble and projection")
    p.add_argument("--decision", type=Path, required=True, help="decision.json of a final calibration run")

    p = sub.add_parser("validate", help="Threshold-dependent validation (decision checkpoint)")
    p.add_argument("--positives", type=Path, required=True)
    p.add_argument("--negatives", type=Path, required=True)
    p.add_argument("--source-crs", help="CRS of CSV inputs or of layers without one")
    p.add_argument("--prediction", type=Path, help="Prediction raster (default: last final mean)")

    p = sub.add_parser("render", help="Render output maps")
    threshold = p.add_mutually_exclusive_group(required=True)
    threshold.add_argument("--threshold", type=float, help="Explicit threshold in [0, 1]")
    threshold.add_argument("--rule", help="Threshold rule from the validation table")
    p.add_argument("--polygons", type=Path, required=True, help="Neighbourhood polygons")
    p.add_argument("--title", default="")
    return parser


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, args.workdir)
    config.workdir.mkdir(parents=True, exist_ok=True)

    if args.stage == "ancillary":
        tiles = args.dem
        if tiles is None:
            username = os.environ.get("EARTHDATA_USERNAME")
            password = os.environ.get("EARTHDATA_PASSWORD")
            if not username or not password:
                logger.error("Set EARTHDATA_USERNAME and EARTHDATA_PASSWORD to download SRTM tiles")
                return 2
            tiles = ancillary.download_srtm(tuple(args.srtm_bbox), config.workdir / "srtm", username, password)
        pipeline.run_ancillary(config, tiles, dict(args.vector), args.urban_layer, args.urban_where)
    elif args.stage == "scene":
        pipeline.run_scene(config, args.scene, args.date)
    elif args.stage == "occurrence":
        pipeline.run_occurrence(config, args.records)
    elif args.stage == "calibrate":
        outcome = pipeline.run_calibration(config, args.stage_name, args.predictors)
        if not outcome.selection.viable:
            return EXIT_NO_VIABLE_MODEL
        print(f"Decision written to {outcome.decision_path}")
    elif args.stage == "reduce":
        print(f"Selected predictors written to {pipeline.run_reduction(config, args.decision)}")
    elif args.stage == "final":
        final = pipeline.run_final(config, args.decision)
        print(f"Mean prediction: {final.paths['mean']}")
    elif args.stage == "validate":
        path = pipeline.run_validation(config, args.positives, args.negatives, args.source_crs, args.prediction)
        print(f"Threshold table written to {path}")
    elif args.stage == "render":
        paths = pipeline.run_render(config, args.polygons, args.threshold, args.rule, args.title)
        for name, path in paths.items():
            print(f"  {name}: {path}")
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        code = run(args)
    except NicheMapError as e:
        logger.error(f"{type(e).__name__}: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
