"""
Configuration for the niche mapping workflow.

Defaults live in module-level constants; a YAML file can override any of them.
The resulting WorkflowConfig is immutable and passed explicitly to every stage.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


# Metric projection of the study area (UTM 20S for Cordoba, Argentina)
DEFAULT_CRS = "EPSG:32720"
GEOGRAPHIC_CRS = "EPSG:4326"

# Regularization multipliers and feature classes evaluated in calibration
REG_MULTS = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 8.0, 10.0)
FEATURE_CLASSES = ("l", "lq", "lp", "lqp", "h", "lh", "lqh", "lph", "lqph")

REPLICATE_TYPES = ("bootstrap", "crossvalidate", "subsample")
OUTPUT_FORMATS = ("cloglog", "logistic", "raw")
MISSING_POLICIES = ("exclude", "absence")

# SPOT 6 multispectral band layout: position in the delivered TIFF per band
SPOT6_BANDS = {"red": 1, "green": 2, "blue": 3, "nir": 4}
SPOT6_GAINS = {"blue": 7.67, "green": 9.25, "red": 10.34, "nir": 13.88}
SPOT6_ESUN = {"blue": 1982.67, "green": 1826.09, "red": 1540.49, "nir": 1094.75}


@dataclass(frozen=True)
class Region:
    """Projection and grid every layer in a workspace conforms to."""

    crs: str = DEFAULT_CRS
    resolution: float = 6.0
    bounds: Optional[tuple[float, float, float, float]] = None


@dataclass(frozen=True)
class OccurrenceConfig:
    species: str = "Aedes aegypti"
    weeks: tuple[int, ...] = (49, 50, 51)
    missing_policy: str = "exclude"
    source_crs: str = GEOGRAPHIC_CRS
    k_folds: int = 4
    test_fold: int = 1
    seed: int = 1
    buffer_radius: float = 800.0


@dataclass(frozen=True)
class SceneConfig:
    bands: dict = field(default_factory=lambda: dict(SPOT6_BANDS))
    gains: dict = field(default_factory=lambda: dict(SPOT6_GAINS))
    bias: float = 0.0
    esun: dict = field(default_factory=lambda: dict(SPOT6_ESUN))
    sun_elevation: float = 60.0
    earth_sun_distance: float = 1.0
    window_size: int = 33
    texture_levels: int = 16
    tile_size: int = 1000
    n_jobs: int = 6
    n_classes: int = 15
    cluster_sample: int = 15
    seed: int = 1


@dataclass(frozen=True)
class CalibrationConfig:
    reg_mults: tuple[float, ...] = REG_MULTS
    feature_classes: tuple[str, ...] = FEATURE_CLASSES
    omission_threshold: float = 5.0
    rand_percent: float = 25.0
    iterations: int = 5000
    selection: str = "OR_AICc"
    significance: float = 0.05
    delta_aicc: float = 2.0
    correlation_threshold: float = 0.7
    correlation_method: str = "spearman"
    contribution_threshold: float = 5.0
    background_size: int = 10000
    replicates: int = 30
    replicate_type: str = "bootstrap"
    output_format: str = "cloglog"
    jackknife: bool = True
    engine: str = "maxent"
    maxent_jar: Optional[str] = None
    engine_timeout: float = 3600.0
    n_jobs: int = 1
    seed: int = 1


@dataclass(frozen=True)
class RenderConfig:
    mean_breaks: tuple[float, ...] = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)
    sd_breaks: tuple[float, ...] = (0.0, 0.05, 0.1, 0.15, 0.2, 0.3)
    mean_palette: str = "YlOrRd"
    sd_palette: str = "YlGnBu"
    zonal_palette: str = "plasma"
    zonal_classes: int = 10
    binary_palette: str = "RdBu_r"
    dpi: int = 300


@dataclass(frozen=True)
class WorkflowConfig:
    workdir: Path = Path(".")
    region: Region = field(default_factory=Region)
    occurrence: OccurrenceConfig = field(default_factory=OccurrenceConfig)
    scene: SceneConfig = field(default_factory=SceneConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    render: RenderConfig = field(default_factory=RenderConfig)


SECTIONS = {
    "region": Region,
    "occurrence": OccurrenceConfig,
    "scene": SceneConfig,
    "calibration": CalibrationConfig,
    "render": RenderConfig,
}


def _build_section(cls, values: dict, section: str):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in config section '{section}': {sorted(unknown)}")

    kwargs = {}
    for key, value in values.items():
        # YAML yields lists; the dataclasses hold tuples
        kwargs[key] = tuple(value) if isinstance(value, list) else value
    return cls(**kwargs)


def validate_config(config: WorkflowConfig) -> None:
    """Raise ValueError if any setting is outside its allowed range."""
    occ = config.occurrence
    if not occ.weeks:
        raise ValueError("occurrence.weeks must name at least one week")
    if occ.missing_policy not in MISSING_POLICIES:
        raise ValueError(f"occurrence.missing_policy must be one of {MISSING_POLICIES}")
    if occ.buffer_radius <= 0:
        raise ValueError("occurrence.buffer_radius must be positive")
    if occ.k_folds < 2 or not 1 <= occ.test_fold <= occ.k_folds:
        raise ValueError("occurrence.k_folds must be >= 2 and test_fold within 1..k_folds")

    cal = config.calibration
    if not cal.reg_mults or any(r <= 0 for r in cal.reg_mults):
        raise ValueError("calibration.reg_mults must be a non-empty sequence of positive numbers")
    if list(cal.reg_mults) != sorted(cal.reg_mults):
        raise ValueError("calibration.reg_mults must be in ascending order")
    if cal.replicate_type not in REPLICATE_TYPES:
        raise ValueError(f"calibration.replicate_type must be one of {REPLICATE_TYPES}")
    if cal.output_format not in OUTPUT_FORMATS:
        raise ValueError(f"calibration.output_format must be one of {OUTPUT_FORMATS}")
    if not 0 < cal.omission_threshold < 100:
        raise ValueError("calibration.omission_threshold is a percentage in (0, 100)")
    if cal.engine not in ("maxent", "maxent-jar"):
        raise ValueError("calibration.engine must be 'maxent' or 'maxent-jar'")
    if cal.engine == "maxent-jar" and not cal.maxent_jar:
        raise ValueError("calibration.maxent_jar is required with engine 'maxent-jar'")

    if config.region.resolution <= 0:
        raise ValueError("region.resolution must be positive")


def load_config(config_path: Optional[str | Path] = None, workdir: Optional[str | Path] = None) -> WorkflowConfig:
    """
    Load the workflow configuration.

    Args:
        config_path: YAML file whose sections override the defaults.
            Without it the defaults are used.
        workdir: Working directory; overrides any `workdir` key in the file.

    Returns:
        Validated, immutable WorkflowConfig
    """
    data: dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")

    unknown = set(data) - set(SECTIONS) - {"workdir"}
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")

    kwargs: dict[str, Any] = {
        name: _build_section(cls, data.get(name) or {}, name)
        for name, cls in SECTIONS.items()
    }
    kwargs["workdir"] = Path(workdir if workdir is not None else data.get("workdir", "."))

    config = WorkflowConfig(**kwargs)
    validate_config(config)
    return config
