"""
Model calibration, selection, variable reduction and final projection.

A calibration run fits one candidate per (regularization multiplier x
feature class) combination, evaluates them, and halts at a decision
checkpoint. Variable reduction and the final replicate ensemble resume from
the (possibly operator-edited) decision file.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .engine import CandidateModel, NicheEngine, candidate_id, validate_options
from .errors import EmptyInputError, EngineError, NicheMapError, StageInputError
from .evaluation import SelectionResult, auc, evaluate_candidate, evaluation_table, permutation_importance, tss
from .predictors import PredictorStack
from .rasters import Raster, write_raster
from .storage import read_json, write_csv, write_json
from .validation import confusion_matrix, optimal_thresholds

logger = logging.getLogger(__name__)

# Share of presences held out per replicate with replicate type "subsample"
SUBSAMPLE_TEST_PERCENT = 25


class CalibrationStage(Enum):
    PENDING = "pending"
    CALIBRATING = "calibrating"
    EVALUATING = "evaluating"
    SELECTED = "selected"
    VARIABLE_REDUCTION = "variable_reduction"
    FINAL_CALIBRATION = "final_calibration"
    FINAL_SELECTION = "final_selection"
    FINAL_PROJECTION = "final_projection"


STAGE_ORDER = list(CalibrationStage)


@dataclass
class CalibrationRun:
    """Stage history of one calibration run, persisted as run.json."""

    run_id: str
    out_dir: Path
    stage: CalibrationStage = CalibrationStage.PENDING
    history: list[str] = field(default_factory=list)

    def advance(self, stage: CalibrationStage) -> None:
        """
        Move to the next stage.

        Raises:
            RuntimeError: if `stage` does not directly follow the current one
        """
        if STAGE_ORDER.index(stage) != STAGE_ORDER.index(self.stage) + 1:
            raise RuntimeError(f"Run {self.run_id}: cannot go from {self.stage.value} to {stage.value}")
        logger.debug(f"Run {self.run_id}: {self.stage.value} -> {stage.value}")
        self.history.append(stage.value)
        self.stage = stage
        self.save()

    def save(self) -> Path:
        return write_json(
            {"run_id": self.run_id, "stage": self.stage.value, "history": self.history},
            self.out_dir / "run.json",
        )

    @classmethod
    def load(cls, out_dir: str | Path) -> "CalibrationRun":
        out_dir = Path(out_dir)
        path = out_dir / "run.json"
        if not path.exists():
            raise StageInputError("Calibration run has no run.json", item=str(out_dir))
        data = read_json(path)
        return cls(data["run_id"], out_dir, CalibrationStage(data["stage"]), list(data["history"]))


@dataclass
class SWDData:
    """Samples-with-data tables: predictor values at presences, background and every calibration cell."""

    joint: pd.DataFrame
    train: pd.DataFrame
    test: pd.DataFrame
    background: pd.DataFrame
    area: pd.DataFrame

    @property
    def predictors(self) -> list[str]:
        return list(self.background.columns)

    def select(self, names: list[str]) -> "SWDData":
        return SWDData(*(frame[names] for frame in (self.joint, self.train, self.test, self.background, self.area)))


def prepare_swd(
    stack: PredictorStack,
    joint: pd.DataFrame,
    train: pd.DataFrame,
    test: pd.DataFrame,
    background_size: int = 10000,
    seed: int = 1,
) -> SWDData:
    """
    Extract predictor values for calibration.

    Args:
        stack: The calibration-area ("M") predictor stack
        joint, train, test: Presence tables with projected `longitude`, `latitude`
        background_size: Number of random background cells
        seed: Random seed for the background sample
    """
    def at(points: pd.DataFrame) -> pd.DataFrame:
        values = stack.extract(points["longitude"].to_numpy(), points["latitude"].to_numpy())
        dropped = int(values.isna().any(axis=1).sum())
        if dropped:
            logger.warning(f"{dropped} presences fall on cells without data in every predictor; dropped")
        return values.dropna().reset_index(drop=True)

    swd_joint, swd_train, swd_test = at(joint), at(train), at(test)
    if swd_train.empty or swd_test.empty:
        raise EmptyInputError("No training or test presence with predictor data", item="swd")

    bx, by = stack.background(background_size, seed=seed)
    background = stack.extract(bx, by)
    X, _ = stack.to_matrix()
    area = pd.DataFrame(X, columns=stack.names)
    logger.info(f"SWD: {len(swd_joint)} presences ({len(swd_train)} train / {len(swd_test)} test), "
                f"{len(background)} background, {len(area)} area cells")
    return SWDData(swd_joint, swd_train, swd_test, background, area)


def _fit_candidate(
    engine: NicheEngine,
    swd: SWDData,
    reg_mult: float,
    features: str,
    out_dir: Path,
    stack: PredictorStack,
    evaluation: dict,
) -> dict:
    model_id = candidate_id(reg_mult, features)
    model_dir = out_dir / model_id
    try:
        train_model = engine.fit(swd.train, swd.background, reg_mult, features)
        joint_model = engine.fit(swd.joint, swd.background, reg_mult, features)
    except NicheMapError:
        raise
    except (ValueError, ArithmeticError, RuntimeError) as e:
        logger.error(f"Fitting {model_id} failed: {e}")
        raise EngineError(f"Candidate fit failed: {e}", params={"reg_mult": reg_mult, "features": features},
                          item=model_id) from e
    joint_model.save(model_dir / "model.joblib")
    train_model.save(model_dir / "model_train.joblib")

    X, valid = stack.to_matrix()
    prediction = stack.from_matrix(joint_model.predict(X), valid, name=joint_model.model_id)
    write_raster(prediction, model_dir / "prediction.tif")

    return evaluate_candidate(
        train_model, swd.joint, swd.train, swd.test, swd.area, swd.background,
        joint_model=joint_model, **evaluation,
    )


def calibrate_grid(
    engine: NicheEngine,
    swd: SWDData,
    stack: PredictorStack,
    reg_mults: tuple[float, ...],
    feature_classes: tuple[str, ...],
    out_dir: str | Path,
    omission: float = 5.0,
    rand_percent: float = 25.0,
    iterations: int = 5000,
    seed: int = 1,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Fit and evaluate every candidate.

    Each candidate writes `<out_dir>/<candidate_id>/model.joblib` (fitted on
    all presences), `model_train.joblib` and `prediction.tif`. Returns the
    evaluation table once all candidates are done.
    """
    validate_options(reg_mults=reg_mults, feature_classes=feature_classes)
    out_dir = Path(out_dir)
    evaluation = {"omission": omission, "rand_percent": rand_percent, "iterations": iterations, "seed": seed}
    grid = [(r, f) for f in feature_classes for r in reg_mults]
    logger.info(f"Calibrating {len(grid)} candidates ({len(reg_mults)} reg-mults x {len(feature_classes)} "
                f"feature classes) with n_jobs={n_jobs}")

    rows = Parallel(n_jobs=n_jobs)(
        delayed(_fit_candidate)(engine, swd, r, f, out_dir, stack, evaluation)
        for r, f in tqdm(grid, desc="Candidates")
    )
    table = evaluation_table(rows)
    write_csv(table, out_dir / "evaluation.csv")
    return table


def write_decision_artifact(selection: SelectionResult, out_dir: str | Path, run_id: str) -> Path:
    """
    Write candidates_ranked.csv, selected_models.csv and decision.json.

    The operator may edit `selected` in decision.json before resuming.
    """
    out_dir = Path(out_dir)
    write_csv(selection.ranked, out_dir / "candidates_ranked.csv")
    write_csv(selection.selected, out_dir / "selected_models.csv")
    return write_json({
        "run_id": run_id,
        "status": selection.status,
        "criterion": selection.criterion,
        "selected": selection.best,
        "retained": list(selection.selected["model"]) if not selection.selected.empty else [],
    }, out_dir / "decision.json")


def read_decision(path: str | Path) -> dict:
    """
    Read a decision file.

    Raises:
        StageInputError: if the file is missing or names no selected model
    """
    path = Path(path)
    if not path.exists():
        raise StageInputError("Decision file not found", item=str(path))
    decision = read_json(path)
    if not decision.get("selected"):
        raise StageInputError(f"Decision has no selected model (status: {decision.get('status')})", item=str(path))
    return decision


def parse_candidate_id(model_id: str) -> tuple[float, str]:
    """Inverse of candidate_id: "M_0.5_F_lq" -> (0.5, "lq")."""
    try:
        prefix, reg, f, features = model_id.split("_", 3)
        if prefix != "M" or f != "F":
            raise ValueError
        return float(reg), features
    except ValueError:
        raise ValueError(f"Not a candidate id: '{model_id}'") from None


ModelFactory = Callable[[list[str]], CandidateModel]


def _test_tss(model: CandidateModel, swd: SWDData) -> float:
    return tss(model.predict(swd.test), model.predict(swd.background))


def remove_correlated(
    factory: ModelFactory,
    swd: SWDData,
    threshold: float = 0.7,
    method: str = "spearman",
    seed: int = 1,
) -> tuple[CandidateModel, list[str]]:
    """
    Drop one predictor of each highly correlated pair.

    Correlation is measured on the background. For the most correlated pair
    the predictor with lower permutation importance is dropped and the model
    refitted, until no pair exceeds `threshold`.

    Returns:
        (refitted model, removed predictor names)
    """
    predictors = list(swd.predictors)
    model = factory(predictors)
    removed = []
    while len(predictors) > 1:
        corr = swd.background[predictors].corr(method=method).abs().fillna(0.0).to_numpy(copy=True)
        np.fill_diagonal(corr, 0.0)
        i, j = np.unravel_index(np.argmax(corr), corr.shape)
        if corr[i, j] <= threshold:
            break
        importance = permutation_importance(model, swd.train, swd.background, seed=seed)
        a, b = predictors[i], predictors[j]
        drop = a if importance[a] < importance[b] else b
        logger.info(f"  {a} ~ {b} (|r|={corr[i, j]:.2f}): removing {drop}")
        predictors.remove(drop)
        removed.append(drop)
        model = factory(predictors)
    return model, removed


def reduce_variables(
    factory: ModelFactory,
    swd: SWDData,
    model: CandidateModel,
    threshold: float = 5.0,
    seed: int = 1,
) -> tuple[CandidateModel, list[str]]:
    """
    Remove low-importance predictors.

    Predictors below `threshold` percent permutation importance are tried in
    increasing order of importance; a removal is kept only if the true skill
    statistic of the test presences against the background does not decrease.

    Returns:
        (final model, removed predictor names)
    """
    removed = []
    current_tss = _test_tss(model, swd)
    while len(model.predictors) > 1:
        importance = permutation_importance(model, swd.train, swd.background, seed=seed).sort_values()
        accepted = False
        for name, value in importance[importance < threshold].items():
            remaining = [p for p in model.predictors if p != name]
            candidate = factory(remaining)
            candidate_tss = _test_tss(candidate, swd)
            if candidate_tss >= current_tss:
                logger.info(f"  Removing {name} ({value:.1f}%): test TSS {current_tss:.3f} -> {candidate_tss:.3f}")
                model, current_tss = candidate, candidate_tss
                removed.append(name)
                accepted = True
                break
        if not accepted:
            break
    return model, removed


@dataclass
class FinalModel:
    """Replicate ensemble of the selected model projected onto the full extent."""

    model_id: str
    predictors: list[str]
    mean: Raster
    stddev: Raster
    replicates: pd.DataFrame
    jackknife: Optional[pd.DataFrame]
    roc: dict
    paths: dict[str, Path] = field(default_factory=dict)


def replicate_splits(n: int, replicates: int, replicate_type: str, seed: int = 1) -> list[tuple[np.ndarray, np.ndarray]]:
    """(train indices, test indices) per replicate."""
    validate_options(replicate_type=replicate_type)
    rng = np.random.default_rng(seed)
    idx = np.arange(n)
    splits = []
    if replicate_type == "crossvalidate":
        if replicates > n:
            raise ValueError(f"Cannot cross-validate {n} presences in {replicates} folds")
        folds = rng.permutation(np.resize(np.arange(replicates), n))
        for k in range(replicates):
            splits.append((idx[folds != k], idx[folds == k]))
    elif replicate_type == "bootstrap":
        for _ in range(replicates):
            train = rng.choice(n, size=n, replace=True)
            splits.append((train, np.setdiff1d(idx, train)))
    else:
        n_test = max(1, int(round(n * SUBSAMPLE_TEST_PERCENT / 100)))
        for _ in range(replicates):
            perm = rng.permutation(n)
            splits.append((np.sort(perm[n_test:]), np.sort(perm[:n_test])))
    return splits


def jackknife(
    engine: NicheEngine,
    swd: SWDData,
    reg_mult: float,
    features: str,
) -> pd.DataFrame:
    """Training AUC with each predictor alone and with each predictor left out."""
    predictors = swd.predictors
    full = engine.fit(swd.joint, swd.background, reg_mult, features)
    full_auc = auc(full.predict(swd.joint), full.predict(swd.background))
    rows = []
    for name in tqdm(predictors, desc="Jackknife"):
        only = engine.fit(swd.joint, swd.background, reg_mult, features, predictors=[name])
        row = {"variable": name, "with_only": auc(only.predict(swd.joint), only.predict(swd.background))}
        rest = [p for p in predictors if p != name]
        if rest:
            without = engine.fit(swd.joint, swd.background, reg_mult, features, predictors=rest)
            row["without"] = auc(without.predict(swd.joint), without.predict(swd.background))
        else:
            row["without"] = float("nan")
        row["all"] = full_auc
        rows.append(row)
    return pd.DataFrame(rows)


def roc_summary(presence_pred: np.ndarray, background_pred: np.ndarray) -> dict:
    """AUC plus sensitivity and specificity at the max(sensitivity + specificity) threshold."""
    obs = np.concatenate([np.ones(len(presence_pred)), np.zeros(len(background_pred))])
    pred = np.concatenate([presence_pred, background_pred])
    keep = ~np.isnan(pred)
    obs, pred = obs[keep], pred[keep]
    threshold = optimal_thresholds(obs, pred)["max_sensitivity_plus_specificity"]
    cm = confusion_matrix(obs, pred, threshold)
    return {
        "auc": auc(pred[obs == 1], pred[obs == 0]),
        "threshold": threshold,
        "sensitivity": cm.sensitivity,
        "specificity": cm.specificity,
        "n_presence": int((obs == 1).sum()),
        "n_background": int((obs == 0).sum()),
    }


def fit_final_model(
    engine: NicheEngine,
    swd: SWDData,
    stack_g: PredictorStack,
    reg_mult: float,
    features: str,
    out_dir: str | Path,
    replicates: int = 30,
    replicate_type: str = "bootstrap",
    output_format: str = "cloglog",
    run_jackknife: bool = True,
    seed: int = 1,
) -> FinalModel:
    """
    Fit the replicate ensemble of the selected candidate and project it.

    Args:
        engine: Fitting engine
        swd: Calibration data restricted to the selected predictors
        stack_g: Full-extent ("G") stack with the same predictors
        reg_mult, features: Selected candidate settings
        out_dir: Run directory; receives mean.tif, stddev.tif,
            replicates.csv, jackknife.csv and roc.json
        replicates: Number of replicates
        replicate_type: bootstrap, crossvalidate or subsample
        output_format: cloglog, logistic or raw
        run_jackknife: Also compute the jackknife table
        seed: Random seed for the replicate splits

    Returns:
        FinalModel
    """
    validate_options(reg_mults=[reg_mult], feature_classes=[features],
                     replicate_type=replicate_type, output_format=output_format)
    out_dir = Path(out_dir)
    stack_g = stack_g.select(swd.predictors)
    model_id = candidate_id(reg_mult, features)
    X, valid = stack_g.to_matrix()

    logger.info(f"Final model {model_id}: {replicates} {replicate_type} replicates on {len(swd.predictors)} predictors")
    splits = replicate_splits(len(swd.joint), replicates, replicate_type, seed)
    projections = np.empty((len(splits), X.shape[0]))
    rows = []
    presence_preds, background_preds = [], []
    for i, (train_idx, test_idx) in enumerate(tqdm(splits, desc="Replicates")):
        train = swd.joint.iloc[train_idx]
        test = swd.joint.iloc[test_idx]
        model = engine.fit(train, swd.background, reg_mult, features)
        model.save(out_dir / "replicates" / f"replicate_{i}.joblib")
        projections[i] = model.predict(X, output=output_format)

        train_pred = model.predict(train, output=output_format)
        bg_pred = model.predict(swd.background, output=output_format)
        presence_preds.append(train_pred)
        background_preds.append(bg_pred)
        rows.append({
            "replicate": i,
            "n_train": len(train_idx),
            "n_test": len(test_idx),
            "n_parameters": model.n_parameters,
            "train_auc": auc(train_pred, bg_pred),
            "test_auc": auc(model.predict(test, output=output_format), bg_pred) if len(test_idx) else float("nan"),
        })

    ddof = 1 if len(splits) > 1 else 0
    mean = stack_g.from_matrix(projections.mean(axis=0), valid, name=f"{model_id}_mean")
    stddev = stack_g.from_matrix(projections.std(axis=0, ddof=ddof), valid, name=f"{model_id}_stddev")

    paths = {
        "mean": write_raster(mean, out_dir / "mean.tif"),
        "stddev": write_raster(stddev, out_dir / "stddev.tif"),
    }
    replicate_table = pd.DataFrame(rows)
    paths["replicates"] = write_csv(replicate_table, out_dir / "replicates.csv")

    jack = None
    if run_jackknife:
        jack = jackknife(engine, swd, reg_mult, features)
        paths["jackknife"] = write_csv(jack, out_dir / "jackknife.csv")

    roc = roc_summary(np.concatenate(presence_preds), np.concatenate(background_preds))
    paths["roc"] = write_json(roc, out_dir / "roc.json")
    logger.info(f"Final model AUC {roc['auc']:.3f}; sensitivity {roc['sensitivity']:.3f}, "
                f"specificity {roc['specificity']:.3f} at {roc['threshold']:.2f}")

    return FinalModel(model_id, swd.predictors, mean, stddev, replicate_table, jack, roc, paths)
