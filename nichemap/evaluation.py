"""
Candidate model evaluation and selection.

Each candidate is scored by partial ROC against the test presences, its
omission rate at the E% training-presence threshold, and AICc. Selection
keeps significant, low-omission models ranked by AICc.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.metrics import roc_auc_score

from .errors import NicheMapError

logger = logging.getLogger(__name__)

SELECTION_CRITERIA = ("OR_AICc", "AICc", "OR")

TABLE_COLUMNS = [
    "model", "reg_mult", "features", "mean_auc_ratio", "proc_pvalue", "omission_rate",
    "aicc", "delta_aicc", "w_aicc", "n_parameters", "train_auc", "test_auc",
]

# Columns select_candidates ranks on
SELECTION_COLUMNS = ("model", "proc_pvalue", "omission_rate", "aicc", "n_parameters")


def auc(presence: np.ndarray, background: np.ndarray) -> float:
    """Area under the ROC curve of presence vs. background predictions."""
    presence = np.asarray(presence, dtype=float)
    background = np.asarray(background, dtype=float)
    presence = presence[~np.isnan(presence)]
    background = background[~np.isnan(background)]
    if presence.size == 0 or background.size == 0:
        return float("nan")
    y = np.concatenate([np.ones(presence.size), np.zeros(background.size)])
    return float(roc_auc_score(y, np.concatenate([presence, background])))


def tss(presence: np.ndarray, background: np.ndarray) -> float:
    """Maximum true skill statistic (sensitivity + specificity - 1) over presence-value thresholds."""
    presence = np.asarray(presence, dtype=float)
    background = np.asarray(background, dtype=float)
    presence = np.sort(presence[~np.isnan(presence)])
    background = np.sort(background[~np.isnan(background)])
    if presence.size == 0 or background.size == 0:
        return float("nan")
    thresholds = np.unique(presence)
    sensitivity = 1.0 - np.searchsorted(presence, thresholds, side="left") / presence.size
    specificity = np.searchsorted(background, thresholds, side="left") / background.size
    return float(np.max(sensitivity + specificity - 1.0))


def _partial_auc_ratio(sample: np.ndarray, background_sorted: np.ndarray, min_sensitivity: float) -> float:
    thresholds = np.unique(np.concatenate([sample, background_sorted[:: max(1, background_sorted.size // 1000)]]))
    n_bg = background_sorted.size
    area = 1.0 - np.searchsorted(background_sorted, thresholds, side="left") / n_bg
    sample_sorted = np.sort(sample)
    sensitivity = 1.0 - np.searchsorted(sample_sorted, thresholds, side="left") / sample.size

    keep = sensitivity >= min_sensitivity
    if not keep.any():
        return float("nan")
    x = np.concatenate([area[keep], [1.0]])
    y = np.concatenate([sensitivity[keep], [1.0]])
    order = np.argsort(x, kind="mergesort")
    x, y = x[order], y[order]
    x_min = x[0]
    random_auc = (1.0 - x_min ** 2) / 2.0
    if random_auc <= 0:
        return float("nan")
    return float(np.trapezoid(y, x) / random_auc)


def partial_roc(
    test_pred: np.ndarray,
    background_pred: np.ndarray,
    omission: float = 5.0,
    rand_percent: float = 25.0,
    iterations: int = 5000,
    seed: int = 1,
) -> tuple[float, float]:
    """
    Partial ROC (Peterson et al. 2008).

    In each iteration `rand_percent` % of the test predictions are resampled
    with replacement and the AUC over the region with omission <= E% is
    divided by that of a random classifier.

    Args:
        test_pred: Predictions at test presences
        background_pred: Predictions over the calibration area
        omission: Accepted omission E, in percent
        rand_percent: Share of test points resampled per iteration
        iterations: Number of bootstrap iterations
        seed: Random seed

    Returns:
        (mean AUC ratio, p-value = share of iterations with ratio <= 1)
    """
    test_pred = np.asarray(test_pred, dtype=float)
    test_pred = test_pred[~np.isnan(test_pred)]
    background_pred = np.asarray(background_pred, dtype=float)
    background_sorted = np.sort(background_pred[~np.isnan(background_pred)])
    if test_pred.size == 0 or background_sorted.size == 0:
        return float("nan"), float("nan")

    rng = np.random.default_rng(seed)
    n_sample = max(1, int(np.ceil(test_pred.size * rand_percent / 100)))
    min_sensitivity = 1.0 - omission / 100.0
    ratios = np.array([
        _partial_auc_ratio(rng.choice(test_pred, size=n_sample, replace=True), background_sorted, min_sensitivity)
        for _ in range(iterations)
    ])
    ratios = ratios[~np.isnan(ratios)]
    if ratios.size == 0:
        return float("nan"), float("nan")
    return float(ratios.mean()), float(np.mean(ratios <= 1.0))


def omission_threshold_value(train_pred: np.ndarray, omission: float) -> float:
    """Prediction value leaving out E% of the training presences."""
    train_sorted = np.sort(np.asarray(train_pred, dtype=float)[~np.isnan(train_pred)])
    if train_sorted.size == 0:
        return float("nan")
    index = min(int(np.ceil(train_sorted.size * omission / 100)), train_sorted.size - 1)
    return float(train_sorted[index])


def omission_rate(train_pred: np.ndarray, test_pred: np.ndarray, omission: float = 5.0) -> float:
    """Share of test presences predicted below the E% training threshold."""
    test_pred = np.asarray(test_pred, dtype=float)
    test_pred = test_pred[~np.isnan(test_pred)]
    threshold = omission_threshold_value(train_pred, omission)
    if test_pred.size == 0 or np.isnan(threshold):
        return float("nan")
    return float(np.mean(test_pred < threshold))


def aicc(occurrence_raw: np.ndarray, area_raw: np.ndarray, n_parameters: int) -> float:
    """
    AICc of a Maxent model (Warren & Seifert 2011).

    Raw predictions at occurrences are normalised by their sum over the
    calibration area. NaN when n_parameters >= n_occurrences - 1.
    """
    occurrence_raw = np.asarray(occurrence_raw, dtype=float)
    occurrence_raw = occurrence_raw[~np.isnan(occurrence_raw)]
    n = occurrence_raw.size
    k = n_parameters
    total = np.nansum(area_raw)
    if n == 0 or k >= n - 1 or total <= 0:
        return float("nan")
    probs = occurrence_raw / total
    if np.any(probs <= 0):
        return float("nan")
    log_likelihood = float(np.sum(np.log(probs)))
    return 2 * k - 2 * log_likelihood + (2 * k * (k + 1)) / (n - k - 1)


def evaluate_candidate(
    model,
    joint: pd.DataFrame,
    train: pd.DataFrame,
    test: pd.DataFrame,
    area: pd.DataFrame,
    background: pd.DataFrame,
    omission: float = 5.0,
    rand_percent: float = 25.0,
    iterations: int = 5000,
    seed: int = 1,
    joint_model=None,
) -> dict:
    """
    Score one candidate.

    Args:
        model: CandidateModel fitted on the training presences
        joint, train, test: Predictor values at all / training / test presences
        area: Predictor values at every calibration-area cell
        background: Predictor values at the background points
        joint_model: The same candidate fitted on all presences; AICc and
            the parameter count come from it when given

    Returns:
        One evaluation-table row
    """
    train_pred = model.predict(train, output="cloglog")
    test_pred = model.predict(test, output="cloglog")
    area_pred = model.predict(area, output="cloglog")
    bg_pred = model.predict(background, output="cloglog")

    ratio, pvalue = partial_roc(test_pred, area_pred, omission, rand_percent, iterations, seed)
    full = joint_model if joint_model is not None else model
    k = full.n_parameters
    return {
        "model": model.model_id,
        "reg_mult": model.reg_mult,
        "features": model.features,
        "mean_auc_ratio": ratio,
        "proc_pvalue": pvalue,
        "omission_rate": omission_rate(train_pred, test_pred, omission),
        "aicc": aicc(full.predict(joint, output="raw"), full.predict(area, output="raw"), k),
        "n_parameters": k,
        "train_auc": auc(train_pred, bg_pred),
        "test_auc": auc(test_pred, bg_pred),
    }


def evaluation_table(rows: list[dict]) -> pd.DataFrame:
    """Assemble candidate rows and add delta AICc and Akaike weights."""
    table = pd.DataFrame(rows)
    finite = table["aicc"].notna()
    table["delta_aicc"] = np.nan
    table["w_aicc"] = np.nan
    if finite.any():
        delta = table.loc[finite, "aicc"] - table.loc[finite, "aicc"].min()
        weights = np.exp(-0.5 * delta)
        table.loc[finite, "delta_aicc"] = delta
        table.loc[finite, "w_aicc"] = weights / weights.sum()
    return table[[c for c in TABLE_COLUMNS if c in table.columns]]


@dataclass
class SelectionResult:
    """Outcome of candidate selection."""

    status: str
    criterion: str
    best: Optional[str]
    selected: pd.DataFrame
    ranked: pd.DataFrame

    @property
    def viable(self) -> bool:
        return self.status == "selected"


def select_candidates(
    table: pd.DataFrame,
    omission_threshold: float = 5.0,
    criterion: str = "OR_AICc",
    significance: float = 0.05,
    delta: float = 2.0,
) -> SelectionResult:
    """
    Select the best candidates.

    OR_AICc keeps significant models (pROC p-value <= significance) whose
    omission rate is at most E/100, then ranks them by AICc (ties go to the
    model with fewer parameters) and retains those within `delta` AICc of
    the best. AICc ranks significant models by AICc only; OR ranks the
    significant, low-omission models by omission rate.

    Returns:
        SelectionResult; status "no_viable_model" when nothing survives
    """
    if criterion not in SELECTION_CRITERIA:
        raise ValueError(f"Unknown selection criterion '{criterion}'. Choose from {list(SELECTION_CRITERIA)}")
    missing = [c for c in SELECTION_COLUMNS if c not in table.columns]
    if missing:
        raise NicheMapError(f"Evaluation table lacks column(s) {missing}", item=missing[0])

    ranked = table.copy()
    significant = ranked["proc_pvalue"] <= significance
    low_omission = ranked["omission_rate"] <= omission_threshold / 100.0
    passes = significant if criterion == "AICc" else significant & low_omission
    if criterion != "OR":
        passes &= ranked["aicc"].notna()
    ranked["passes"] = passes

    if criterion == "OR":
        order = ["passes", "omission_rate", "aicc", "n_parameters"]
        ascending = [False, True, True, True]
    else:
        order = ["passes", "aicc", "n_parameters"]
        ascending = [False, True, True]
    ranked = ranked.sort_values(order, ascending=ascending, na_position="last", kind="mergesort").reset_index(drop=True)

    survivors = ranked[ranked["passes"]]
    if survivors.empty:
        logger.warning(f"No candidate passes {criterion} (E={omission_threshold}%, p<={significance})")
        return SelectionResult("no_viable_model", criterion, None, survivors.copy(), ranked)

    if criterion == "OR":
        selected = survivors[survivors["omission_rate"] == survivors["omission_rate"].iloc[0]]
    else:
        within = survivors["aicc"] - survivors["aicc"].iloc[0] <= delta
        selected = survivors[within]
    best = str(survivors["model"].iloc[0])
    logger.info(f"Selected {len(selected)} of {len(table)} candidates by {criterion}; best: {best}")
    return SelectionResult("selected", criterion, best, selected.reset_index(drop=True), ranked)


def permutation_importance(
    model,
    presence: pd.DataFrame,
    background: pd.DataFrame,
    seed: int = 1,
    permutations: int = 1,
) -> pd.Series:
    """
    Percent permutation importance of each predictor.

    The training AUC drop when a predictor is shuffled across presence and
    background, normalised to sum to 100.
    """
    rng = np.random.default_rng(seed)
    data = pd.concat([presence[model.predictors], background[model.predictors]], ignore_index=True)
    n_pres = len(presence)
    full = model.predict(data)
    base = auc(full[:n_pres], full[n_pres:])

    drops = {}
    for name in model.predictors:
        losses = []
        for _ in range(permutations):
            shuffled = data.copy()
            shuffled[name] = rng.permutation(shuffled[name].to_numpy())
            pred = model.predict(shuffled)
            losses.append(max(0.0, base - auc(pred[:n_pres], pred[n_pres:])))
        drops[name] = float(np.mean(losses))

    importance = pd.Series(drops, name="permutation_importance")
    total = importance.sum()
    return importance * 100.0 / total if total > 0 else importance * 0.0
