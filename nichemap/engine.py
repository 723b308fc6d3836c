"""
Niche-modeling engines.

MaxentEngine fits Maxent in-process as an infinitely-weighted logistic
regression (presences vs. heavily weighted background) with an L1 penalty.
MaxentJarEngine runs the reference maxent.jar on SWD files and reads back
its .lambdas file. Both return a CandidateModel that predicts in Maxent's
raw, logistic or cloglog scale.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import joblib
import numpy as np
import pandas as pd
from scipy.special import logsumexp
from sklearn.linear_model import LogisticRegression

from .config import OUTPUT_FORMATS, REPLICATE_TYPES
from .errors import EmptyInputError, EngineError
from .storage import atomic_path, new_run_id, write_csv

logger = logging.getLogger(__name__)

FEATURE_SYMBOLS = {
    "l": "linear",
    "q": "quadratic",
    "p": "product",
    "t": "threshold",
    "h": "hinge",
}

# Weight of the background relative to the presences (infinitely-weighted
# logistic regression approximates the Maxent density as this grows)
BACKGROUND_WEIGHT = 100.0
N_KNOTS = 10


def parse_feature_classes(code: str) -> tuple[str, ...]:
    """
    Expand a feature-class code such as "lqph".

    Returns:
        Feature class names in canonical order, e.g. ("linear", "quadratic", "product", "hinge")

    Raises:
        ValueError: on an empty code or an unknown symbol
    """
    if not code:
        raise ValueError("Empty feature-class code")
    unknown = sorted(set(code) - set(FEATURE_SYMBOLS))
    if unknown:
        raise ValueError(f"Unknown feature-class symbols {unknown} in '{code}'. Use {''.join(FEATURE_SYMBOLS)}")
    return tuple(name for symbol, name in FEATURE_SYMBOLS.items() if symbol in code)


def validate_options(
    reg_mults=None,
    feature_classes=None,
    replicate_type: Optional[str] = None,
    output_format: Optional[str] = None,
) -> None:
    """Raise ValueError for option values the engines do not accept."""
    if reg_mults is not None:
        if len(reg_mults) == 0:
            raise ValueError("At least one regularization multiplier is required")
        for r in reg_mults:
            if isinstance(r, bool) or not isinstance(r, (int, float)) or not np.isfinite(r) or r <= 0:
                raise ValueError(f"Regularization multipliers must be positive reals, got {r!r}")
    for code in feature_classes or ():
        parse_feature_classes(code)
    if replicate_type is not None and replicate_type not in REPLICATE_TYPES:
        raise ValueError(f"Unknown replicate type '{replicate_type}'. Choose from {list(REPLICATE_TYPES)}")
    if output_format is not None and output_format not in OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format '{output_format}'. Choose from {list(OUTPUT_FORMATS)}")


def candidate_id(reg_mult: float, features: str) -> str:
    return f"M_{reg_mult:g}_F_{features}"


class FeatureBuilder:
    """
    Expand predictors into Maxent feature classes.

    Predictors are clamped and min-max scaled on the training data; hinge
    and threshold features use knots at background quantiles.
    """

    def __init__(self, classes: tuple[str, ...], n_knots: int = N_KNOTS):
        self.classes = classes
        self.n_knots = n_knots
        self.names: list[str] = []
        self.mins: Optional[np.ndarray] = None
        self.maxs: Optional[np.ndarray] = None
        self.knots: list[np.ndarray] = []
        self.feature_names: list[str] = []

    def fit(self, X: np.ndarray, names: list[str]) -> "FeatureBuilder":
        X = np.asarray(X, dtype=float)
        self.names = list(names)
        self.mins = np.nanmin(X, axis=0)
        self.maxs = np.nanmax(X, axis=0)
        scaled = self._scale(X)
        probs = np.arange(1, self.n_knots + 1) / (self.n_knots + 1)
        self.knots = []
        for j in range(X.shape[1]):
            col = scaled[:, j]
            knots = np.unique(np.nanquantile(col, probs)) if np.isfinite(col).any() else np.array([])
            self.knots.append(knots[(knots > 0) & (knots < 1)])
        self.feature_names = self._names()
        return self

    def _scale(self, X: np.ndarray) -> np.ndarray:
        span = np.where(self.maxs > self.mins, self.maxs - self.mins, 1.0)
        clamped = np.clip(X, self.mins, self.maxs)
        return (clamped - self.mins) / span

    def _names(self) -> list[str]:
        out = []
        n = len(self.names)
        if "linear" in self.classes:
            out += [f"lin:{v}" for v in self.names]
        if "quadratic" in self.classes:
            out += [f"quad:{v}" for v in self.names]
        if "product" in self.classes:
            out += [f"prod:{self.names[i]}*{self.names[j]}" for i in range(n) for j in range(i + 1, n)]
        if "hinge" in self.classes:
            for v, knots in zip(self.names, self.knots):
                out += [f"fhinge:{v}@{k:.3f}" for k in knots]
                out += [f"rhinge:{v}@{k:.3f}" for k in knots]
        if "threshold" in self.classes:
            for v, knots in zip(self.names, self.knots):
                out += [f"thr:{v}@{k:.3f}" for k in knots]
        return out

    def transform(self, X: np.ndarray) -> np.ndarray:
        if self.mins is None:
            raise RuntimeError("FeatureBuilder has not been fitted")
        s = self._scale(np.asarray(X, dtype=float))
        n = s.shape[1]
        blocks = []
        if "linear" in self.classes:
            blocks.append(s)
        if "quadratic" in self.classes:
            blocks.append(s ** 2)
        if "product" in self.classes:
            pairs = [(i, j) for i in range(n) for j in range(i + 1, n)]
            if pairs:
                blocks.append(np.column_stack([s[:, i] * s[:, j] for i, j in pairs]))
        if "hinge" in self.classes:
            for j, knots in enumerate(self.knots):
                if knots.size:
                    col = s[:, [j]]
                    blocks.append(np.maximum(0.0, (col - knots) / (1.0 - knots)))
                    blocks.append(np.maximum(0.0, (knots - col) / knots))
        if "threshold" in self.classes:
            for j, knots in enumerate(self.knots):
                if knots.size:
                    blocks.append((s[:, [j]] > knots).astype(float))
        if not blocks:
            return np.empty((s.shape[0], 0))
        features = np.hstack(blocks)
        features[np.isnan(s).any(axis=1)] = np.nan
        return features


@dataclass
class LambdaTerm:
    """One line of a maxent.jar .lambdas file."""

    kind: str
    variables: tuple[str, ...]
    weight: float
    lo: float
    hi: float
    knot: float = 0.0

    def evaluate(self, columns: dict[str, np.ndarray]) -> np.ndarray:
        span = self.hi - self.lo if self.hi != self.lo else 1.0
        if self.kind == "threshold":
            return (columns[self.variables[0]] > self.knot).astype(float)
        x = columns[self.variables[0]]
        if self.kind == "forward_hinge":
            return np.where(x > self.lo, (x - self.lo) / span, 0.0)
        if self.kind == "reverse_hinge":
            return np.where(x < self.hi, (self.hi - x) / span, 0.0)
        if self.kind == "quadratic":
            x = x ** 2
        elif self.kind == "product":
            x = x * columns[self.variables[1]]
        return np.clip((x - self.lo) / span, 0.0, 1.0)


class LambdaTerms:
    """Feature transform defined by the terms of a .lambdas file."""

    def __init__(self, terms: list[LambdaTerm], names: list[str]):
        self.terms = terms
        self.names = names
        self.feature_names = [f"{t.kind}:{'*'.join(t.variables)}" for t in terms]

    def transform(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        columns = {name: X[:, j] for j, name in enumerate(self.names)}
        if not self.terms:
            return np.empty((X.shape[0], 0))
        features = np.column_stack([t.evaluate(columns) for t in self.terms])
        features[np.isnan(X).any(axis=1)] = np.nan
        return features


@dataclass
class CandidateModel:
    """
    A fitted Maxent model.

    raw(x) = exp(f(x) . coef - log_normalizer), summing to 1 over the
    background; entropy is that of the raw background distribution.
    """

    reg_mult: float
    features: str
    predictors: list[str]
    builder: object
    coef: np.ndarray
    log_normalizer: float
    entropy: float
    engine: str = "maxent"
    info: dict = field(default_factory=dict)

    @property
    def model_id(self) -> str:
        return candidate_id(self.reg_mult, self.features)

    @property
    def n_parameters(self) -> int:
        """Number of features with a non-zero weight."""
        return int(np.count_nonzero(self.coef))

    def _matrix(self, X) -> np.ndarray:
        if isinstance(X, pd.DataFrame):
            missing = [p for p in self.predictors if p not in X.columns]
            if missing:
                raise KeyError(f"Missing predictor columns: {missing}")
            return X[self.predictors].to_numpy(dtype=float)
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(self.predictors):
            raise ValueError(f"Expected {len(self.predictors)} predictor columns, got shape {X.shape}")
        return X

    def predict(self, X, output: str = "cloglog") -> np.ndarray:
        """
        Predict suitability. Rows with missing predictors give NaN.

        Args:
            X: DataFrame with the predictor columns, or an array in `predictors` order
            output: "cloglog", "logistic" or "raw"
        """
        if output not in OUTPUT_FORMATS:
            raise ValueError(f"Unknown output format '{output}'. Choose from {list(OUTPUT_FORMATS)}")
        F = self.builder.transform(self._matrix(X))
        valid = ~np.isnan(F).any(axis=1) if F.shape[1] else np.ones(F.shape[0], dtype=bool)
        out = np.full(F.shape[0], np.nan)
        eta = F[valid] @ self.coef if F.shape[1] else np.zeros(int(valid.sum()))
        raw = np.exp(eta - self.log_normalizer)
        if output == "raw":
            out[valid] = raw
        elif output == "cloglog":
            out[valid] = 1.0 - np.exp(-np.exp(self.entropy) * raw)
        else:
            scaled = np.exp(self.entropy) * raw
            out[valid] = scaled / (1.0 + scaled)
        return out

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        with atomic_path(path) as tmp:
            joblib.dump(self, tmp)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "CandidateModel":
        model = joblib.load(path)
        if not isinstance(model, cls):
            raise TypeError(f"{path} does not hold a {cls.__name__}")
        return model


def _as_matrix(df: pd.DataFrame, predictors: list[str]) -> np.ndarray:
    X = df[predictors].to_numpy(dtype=float)
    return X[~np.isnan(X).any(axis=1)]


class NicheEngine:
    """Fits one candidate model from presence and background SWD frames."""

    name = "engine"

    def fit(
        self,
        presence: pd.DataFrame,
        background: pd.DataFrame,
        reg_mult: float,
        features: str,
        predictors: Optional[list[str]] = None,
    ) -> CandidateModel:
        raise NotImplementedError


class MaxentEngine(NicheEngine):
    """Maxent as an L1-penalised infinitely-weighted logistic regression."""

    name = "maxent"

    def __init__(self, background_weight: float = BACKGROUND_WEIGHT, max_iter: int = 500, n_knots: int = N_KNOTS):
        self.background_weight = background_weight
        self.max_iter = max_iter
        self.n_knots = n_knots

    def fit(
        self,
        presence: pd.DataFrame,
        background: pd.DataFrame,
        reg_mult: float,
        features: str,
        predictors: Optional[list[str]] = None,
    ) -> CandidateModel:
        """
        Fit one candidate.

        Args:
            presence: Predictor values at presence points
            background: Predictor values at background points
            reg_mult: Regularization multiplier (> 0); larger is smoother
            features: Feature-class code, e.g. "lqh"
            predictors: Columns to use (default: all columns of `background`)

        Returns:
            Fitted CandidateModel
        """
        validate_options(reg_mults=[reg_mult], feature_classes=[features])
        predictors = list(predictors or background.columns)
        Xp = _as_matrix(presence, predictors)
        Xb = _as_matrix(background, predictors)
        item = candidate_id(reg_mult, features)
        if len(Xp) < 2:
            raise EmptyInputError("Need at least 2 presence samples with complete predictors", item=item)
        if len(Xb) < 2:
            raise EmptyInputError("Need at least 2 background samples with complete predictors", item=item)

        builder = FeatureBuilder(parse_feature_classes(features), n_knots=self.n_knots)
        builder.fit(np.vstack([Xp, Xb]), predictors)
        Fp = builder.transform(Xp)
        Fb = builder.transform(Xb)

        X = np.vstack([Fp, Fb])
        y = np.array([1] * len(Fp) + [0] * len(Fb))
        # Total background weight is background_weight times the presence count
        weights = np.concatenate([
            np.ones(len(Fp)),
            np.full(len(Fb), self.background_weight * len(Fp) / len(Fb)),
        ])

        if X.shape[1]:
            # the sample weights already scale the loss with the presence count
            model = LogisticRegression(
                penalty="l1",
                C=1.0 / reg_mult,
                solver="liblinear",
                max_iter=self.max_iter,
                intercept_scaling=10.0,
            )
            model.fit(X, y, sample_weight=weights)
            coef = model.coef_[0].copy()
        else:
            coef = np.zeros(0)

        eta_bg = Fb @ coef if coef.size else np.zeros(len(Fb))
        log_normalizer = float(logsumexp(eta_bg))
        raw_bg = np.exp(eta_bg - log_normalizer)
        entropy = float(-np.sum(raw_bg * np.log(np.clip(raw_bg, 1e-300, None))))

        return CandidateModel(
            reg_mult=reg_mult,
            features=features,
            predictors=predictors,
            builder=builder,
            coef=coef,
            log_normalizer=log_normalizer,
            entropy=entropy,
            engine=self.name,
            info={"n_presence": len(Fp), "n_background": len(Fb), "n_features": X.shape[1]},
        )


LAMBDA_HEADER = ("linearPredictorNormalizer", "densityNormalizer", "numBackgroundPoints", "entropy")
THRESHOLD_TERM = re.compile(r"^\((?P<knot>[-+0-9.eE]+)<(?P<var>.+)\)$")


def parse_lambdas(path: str | Path, predictors: list[str]) -> tuple[LambdaTerms, float, float]:
    """
    Read a .lambdas file.

    Returns:
        (terms, log_normalizer, entropy)
    """
    terms = []
    header = {}
    with open(path) as f:
        for line in f:
            parts = [p.strip() for p in line.strip().split(",")]
            if not parts[0]:
                continue
            if parts[0] in LAMBDA_HEADER:
                header[parts[0]] = float(parts[1])
                continue
            name, weight, lo, hi = parts[0], float(parts[1]), float(parts[2]), float(parts[3])
            if weight == 0.0:
                continue
            threshold = THRESHOLD_TERM.match(name)
            if threshold:
                terms.append(LambdaTerm("threshold", (threshold["var"],), weight, lo, hi, float(threshold["knot"])))
            elif name.startswith("'"):
                terms.append(LambdaTerm("forward_hinge", (name[1:],), weight, lo, hi))
            elif name.startswith("`"):
                terms.append(LambdaTerm("reverse_hinge", (name[1:],), weight, lo, hi))
            elif name.endswith("^2"):
                terms.append(LambdaTerm("quadratic", (name[:-2],), weight, lo, hi))
            elif "*" in name:
                a, b = name.split("*", 1)
                terms.append(LambdaTerm("product", (a, b), weight, lo, hi))
            elif name in predictors:
                terms.append(LambdaTerm("linear", (name,), weight, lo, hi))
            else:
                raise ValueError(f"Unsupported lambdas term '{name}' in {path}")

    missing = [k for k in LAMBDA_HEADER if k != "numBackgroundPoints" and k not in header]
    if missing:
        raise ValueError(f"Lambdas file {path} lacks {missing}")
    log_normalizer = header["linearPredictorNormalizer"] + np.log(header["densityNormalizer"])
    return LambdaTerms(terms, predictors), float(log_normalizer), header["entropy"]


class MaxentJarEngine(NicheEngine):
    """Runs maxent.jar in samples-with-data mode, one process per candidate."""

    name = "maxent-jar"

    def __init__(
        self,
        jar_path: str | Path,
        work_dir: str | Path,
        timeout: float = 3600.0,
        java: str = "java",
        memory: str = "2g",
        species: str = "species",
    ):
        self.jar_path = Path(jar_path)
        self.work_dir = Path(work_dir)
        self.timeout = timeout
        self.java = java
        self.memory = memory
        self.species = species.replace(" ", "_")

    def command(self, samples: Path, background: Path, out_dir: Path, reg_mult: float, features: str) -> list[str]:
        classes = parse_feature_classes(features)
        toggles = [f"{name}={'true' if name in classes else 'false'}" for name in FEATURE_SYMBOLS.values()]
        return [
            self.java, f"-mx{self.memory}", "-jar", str(self.jar_path),
            f"samplesfile={samples}",
            f"environmentallayers={background}",
            f"outputdirectory={out_dir}",
            f"betamultiplier={reg_mult:g}",
            *toggles,
            "autofeature=false",
            "outputformat=raw",
            "replicates=1",
            "replicatetype=bootstrap",
            "writebackgroundpredictions=true",
            "pictures=false",
            "responsecurves=false",
            "askoverwrite=false",
            "visible=false",
            "nowarnings",
            "autorun",
        ]

    def _run(self, command: list[str], params: dict, item: str) -> None:
        logger.info(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            logger.error(f"maxent.jar timed out after {self.timeout}s: {params}")
            raise EngineError(f"maxent.jar timed out after {self.timeout}s", command, params, item=item) from e
        except OSError as e:
            raise EngineError(f"Could not start java: {e}", command, params, item=item) from e
        if result.returncode != 0:
            tail = "\n".join(result.stderr.strip().splitlines()[-10:])
            logger.error(f"maxent.jar exited with {result.returncode}; params {params}\n{tail}")
            raise EngineError(f"maxent.jar exited with code {result.returncode}", command, params, item=item)

    def fit(
        self,
        presence: pd.DataFrame,
        background: pd.DataFrame,
        reg_mult: float,
        features: str,
        predictors: Optional[list[str]] = None,
    ) -> CandidateModel:
        validate_options(reg_mults=[reg_mult], feature_classes=[features])
        predictors = list(predictors or background.columns)
        item = candidate_id(reg_mult, features)
        # one directory per fit; maxent.jar names its outputs after the species only
        run_dir = self.work_dir / item / new_run_id("fit")
        run_dir.mkdir(parents=True, exist_ok=False)

        def swd(frame: pd.DataFrame, label: str) -> pd.DataFrame:
            values = frame[predictors].dropna().reset_index(drop=True)
            coords = pd.DataFrame({
                "species": label,
                "longitude": np.arange(len(values), dtype=float),
                "latitude": np.zeros(len(values)),
            })
            return pd.concat([coords, values], axis=1)

        samples = write_csv(swd(presence, self.species), run_dir / "samples_swd.csv")
        bg = write_csv(swd(background, "background"), run_dir / "background_swd.csv")
        command = self.command(samples, bg, run_dir, reg_mult, features)
        self._run(command, {"reg_mult": reg_mult, "features": features}, item)

        lambdas = run_dir / f"{self.species}.lambdas"
        if not lambdas.exists():
            raise EngineError(f"maxent.jar wrote no lambdas file at {lambdas}", command, item=item)
        terms, log_normalizer, entropy = parse_lambdas(lambdas, predictors)
        return CandidateModel(
            reg_mult=reg_mult,
            features=features,
            predictors=predictors,
            builder=terms,
            coef=np.array([t.weight for t in terms.terms]),
            log_normalizer=log_normalizer,
            entropy=entropy,
            engine=self.name,
            info={"lambdas": str(lambdas)},
        )


def make_engine(config, work_dir: str | Path, species: str = "species") -> NicheEngine:
    """Engine named by CalibrationConfig.engine."""
    if config.engine == "maxent":
        return MaxentEngine()
    if config.engine == "maxent-jar":
        return MaxentJarEngine(config.maxent_jar, work_dir, timeout=config.engine_timeout, species=species)
    raise ValueError(f"Unknown engine '{config.engine}'")
