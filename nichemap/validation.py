"""
Threshold-dependent validation against independent presence/absence records.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd

from .errors import EmptyInputError, SpatialReferenceError
from .evaluation import auc
from .rasters import Raster, sample

logger = logging.getLogger(__name__)

THRESHOLD_RULES = (
    "min_occurrence_prediction",
    "mean_occurrence_prediction",
    "ten_percent_omission",
    "sensitivity_equals_specificity",
    "max_sensitivity_plus_specificity",
    "max_prop_correct",
    "min_roc_plot_distance",
)


def _ratio(num: float, den: float) -> float:
    return num / den if den else float("nan")


@dataclass(frozen=True)
class ConfusionMatrix:
    """Counts of a binary prediction; present iff prediction >= threshold."""

    tn: int
    fp: int
    fn: int
    tp: int

    @property
    def n(self) -> int:
        return self.tn + self.fp + self.fn + self.tp

    @property
    def sensitivity(self) -> float:
        return _ratio(self.tp, self.tp + self.fn)

    @property
    def specificity(self) -> float:
        return _ratio(self.tn, self.tn + self.fp)

    @property
    def fpr(self) -> float:
        return _ratio(self.fp, self.fp + self.tn)

    @property
    def fnr(self) -> float:
        return _ratio(self.fn, self.fn + self.tp)

    @property
    def precision(self) -> float:
        return _ratio(self.tp, self.tp + self.fp)

    @property
    def recall(self) -> float:
        return self.sensitivity

    @property
    def npv(self) -> float:
        return _ratio(self.tn, self.tn + self.fn)

    @property
    def overall_accuracy(self) -> float:
        return _ratio(self.tp + self.tn, self.n)

    @property
    def kappa(self) -> float:
        n = self.n
        if n == 0:
            return float("nan")
        observed = (self.tp + self.tn) / n
        expected = ((self.tp + self.fp) * (self.tp + self.fn) + (self.fn + self.tn) * (self.fp + self.tn)) / n ** 2
        return _ratio(observed - expected, 1.0 - expected)

    def metrics(self) -> dict:
        return {
            **asdict(self),
            "fpr": self.fpr,
            "fnr": self.fnr,
            "precision": self.precision,
            "recall": self.recall,
            "npv": self.npv,
            "overall_accuracy": self.overall_accuracy,
            "sensitivity": self.sensitivity,
            "specificity": self.specificity,
            "kappa": self.kappa,
        }


def _clean(obs, pred) -> tuple[np.ndarray, np.ndarray]:
    obs = np.asarray(obs, dtype=float)
    pred = np.asarray(pred, dtype=float)
    if obs.shape != pred.shape:
        raise ValueError(f"obs and pred differ in length: {obs.shape} vs {pred.shape}")
    keep = ~np.isnan(obs) & ~np.isnan(pred)
    obs, pred = obs[keep], pred[keep]
    if not np.isin(obs, (0, 1)).all():
        raise ValueError("obs must hold 0 (absence) or 1 (presence)")
    return obs.astype(int), pred


def confusion_matrix(obs, pred, threshold: float) -> ConfusionMatrix:
    obs, pred = _clean(obs, pred)
    present = pred >= threshold
    return ConfusionMatrix(
        tn=int(np.sum(~present & (obs == 0))),
        fp=int(np.sum(present & (obs == 0))),
        fn=int(np.sum(~present & (obs == 1))),
        tp=int(np.sum(present & (obs == 1))),
    )


def _tied_mean(thresholds: np.ndarray, score: np.ndarray, best: float) -> float:
    tied = np.isclose(score, best, rtol=0.0, atol=1e-12)
    return float(np.mean(thresholds[tied]))


def optimal_thresholds(obs, pred, n_steps: int = 101) -> dict[str, float]:
    """
    Thresholds chosen by each rule.

    Rules that optimise a score scan `n_steps` thresholds evenly spaced in
    [0, 1]; several thresholds scoring the same resolve to their mean.

    Raises:
        EmptyInputError: without both presences and absences
    """
    obs, pred = _clean(obs, pred)
    if not (obs == 1).any() or not (obs == 0).any():
        raise EmptyInputError("Threshold selection needs both presence and absence records", item="validation")

    presence_pred = np.sort(pred[obs == 1])
    thresholds = np.linspace(0.0, 1.0, n_steps)
    matrices = [confusion_matrix(obs, pred, t) for t in thresholds]
    sens = np.array([m.sensitivity for m in matrices])
    spec = np.array([m.specificity for m in matrices])
    correct = np.array([m.overall_accuracy for m in matrices])
    balance = np.abs(sens - spec)
    total = sens + spec
    distance = (1.0 - sens) ** 2 + (spec - 1.0) ** 2

    return {
        "min_occurrence_prediction": float(presence_pred[0]),
        "mean_occurrence_prediction": float(presence_pred.mean()),
        "ten_percent_omission": float(presence_pred[int(np.floor(presence_pred.size * 0.1))]),
        "sensitivity_equals_specificity": _tied_mean(thresholds, balance, balance.min()),
        "max_sensitivity_plus_specificity": _tied_mean(thresholds, total, total.max()),
        "max_prop_correct": _tied_mean(thresholds, correct, correct.max()),
        "min_roc_plot_distance": _tied_mean(thresholds, distance, distance.min()),
    }


def validate(obs, pred, n_steps: int = 101) -> pd.DataFrame:
    """
    Threshold table: one row per rule with its threshold and metrics.

    Returns:
        DataFrame with columns rule, threshold, tn, fp, fn, tp, fpr, fnr,
        precision, recall, npv, overall_accuracy, sensitivity, specificity,
        kappa, auc
    """
    obs, pred = _clean(obs, pred)
    thresholds = optimal_thresholds(obs, pred, n_steps)
    model_auc = auc(pred[obs == 1], pred[obs == 0])
    rows = []
    for rule in THRESHOLD_RULES:
        cm = confusion_matrix(obs, pred, thresholds[rule])
        rows.append({"rule": rule, "threshold": thresholds[rule], **cm.metrics(), "auc": model_auc})
    table = pd.DataFrame(rows)
    logger.info(f"Validated {len(obs)} records ({int(obs.sum())} positive); AUC {model_auc:.3f}")
    return table


def _read_points(path: Path, crs: Optional[str]) -> gpd.GeoDataFrame:
    if path.suffix.lower() in (".csv", ".txt"):
        df = pd.read_csv(path, sep="," if path.suffix.lower() == ".csv" else "\t")
        cols = {c.lower(): c for c in df.columns}
        x = cols.get("x") or cols.get("longitude") or cols.get("long") or cols.get("lon")
        y = cols.get("y") or cols.get("latitude") or cols.get("lat")
        if x is None or y is None:
            raise SpatialReferenceError("Point table needs x/y or longitude/latitude columns", item=str(path))
        if crs is None:
            raise SpatialReferenceError("CRS of point table not given", item=str(path))
        return gpd.GeoDataFrame(df, geometry=gpd.points_from_xy(df[x], df[y]), crs=crs)
    gdf = gpd.read_file(path)
    if gdf.crs is None:
        if crs is None:
            raise SpatialReferenceError("Point layer has no CRS", item=str(path))
        gdf = gdf.set_crs(crs)
    return gdf


def load_validation_records(
    positives: str | Path,
    negatives: str | Path,
    crs: str,
    source_crs: Optional[str] = None,
) -> pd.DataFrame:
    """
    Positive and negative field records as one table.

    Args:
        positives: Point layer (shapefile, GeoJSON, KML) or CSV of positive sites
        negatives: Same for negative sites
        crs: CRS of the prediction raster; records are reprojected to it
        source_crs: CRS of CSV inputs, or of vector layers that carry none

    Returns:
        DataFrame with columns x, y, presence
    """
    frames = []
    for path, label in ((Path(positives), 1), (Path(negatives), 0)):
        gdf = _read_points(path, source_crs).to_crs(crs)
        gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty]
        frames.append(pd.DataFrame({"x": gdf.geometry.x, "y": gdf.geometry.y, "presence": label}))
    records = pd.concat(frames, ignore_index=True)
    if records.empty:
        raise EmptyInputError("No validation records", item=f"{positives}, {negatives}")
    logger.info(f"Validation records: {int(records['presence'].sum())} positive, "
                f"{int((records['presence'] == 0).sum())} negative")
    return records


def extract_predictions(raster: Raster, records: pd.DataFrame, method: str = "bilinear") -> pd.DataFrame:
    """Add a `predicted` column sampled from the raster at each record."""
    out = records.copy()
    out["predicted"] = sample(raster, out["x"].to_numpy(), out["y"].to_numpy(), method=method)
    missing = int(out["predicted"].isna().sum())
    if missing:
        logger.warning(f"{missing} validation records fall outside the prediction or on nodata; ignored")
    return out
