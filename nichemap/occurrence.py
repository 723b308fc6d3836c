"""
Occurrence preparation from ovitrap sampling records.

Sites are labelled present when eggs were collected in the sampling window
around the scene date; presences are projected to the metric CRS and split
into training and test folds for calibration.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from pyproj import Transformer

from .errors import EmptyInputError, SpatialReferenceError
from .storage import write_csv

logger = logging.getLogger(__name__)

# Recognised coordinate column names (case-insensitive) -> canonical name
COORD_COLUMNS = {
    "long": "longitude",
    "lon": "longitude",
    "longitude": "longitude",
    "lat": "latitude",
    "latitude": "latitude",
}
WEEK_COLUMN = re.compile(r"^(?:w|week_?)?(\d{1,2})$", re.IGNORECASE)

CALIBRATION_COLUMNS = ["species", "longitude", "latitude"]


def week_columns(df: pd.DataFrame) -> dict[int, str]:
    """Map epidemiological week number -> column name."""
    weeks = {}
    for col in df.columns:
        match = WEEK_COLUMN.match(str(col).strip())
        if match:
            weeks[int(match.group(1))] = col
    return weeks


def load_sampling_records(path: str | Path, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Load a table of sampling sites with weekly counts.

    The first column is the site id. Coordinates come from `Long`/`Lat`
    (or `longitude`/`latitude`) in decimal degrees; week columns are named
    `w<N>` or `<N>`.

    Raises:
        EmptyInputError: if the table has no rows or no week columns
        SpatialReferenceError: if coordinates are missing or not geographic
    """
    path = Path(path)
    if sep is None:
        sep = "," if path.suffix.lower() == ".csv" else "\t"
    df = pd.read_csv(path, sep=sep)
    if df.empty:
        raise EmptyInputError("Sampling table has no rows", item=str(path))

    renames = {c: COORD_COLUMNS[c.strip().lower()] for c in df.columns if c.strip().lower() in COORD_COLUMNS}
    df = df.rename(columns=renames)
    if "longitude" not in df or "latitude" not in df:
        raise SpatialReferenceError("Sampling table needs longitude/latitude columns", item=str(path))
    if not week_columns(df):
        raise EmptyInputError("Sampling table has no week columns", item=str(path))

    first = df.columns[0]
    if first in ("longitude", "latitude") or first in week_columns(df).values():
        df.insert(0, "site", np.arange(1, len(df) + 1))
    else:
        df = df.rename(columns={first: "site"})
    bad = ~df["longitude"].between(-180, 180) | ~df["latitude"].between(-90, 90)
    if bad.any():
        raise SpatialReferenceError(
            f"{int(bad.sum())} records have coordinates outside geographic range",
            item=str(df.loc[bad, "site"].iloc[0]),
        )

    logger.info(f"Loaded {len(df)} sampling sites from {path.name}")
    return df


def summarize_window(
    df: pd.DataFrame,
    weeks: tuple[int, ...],
    missing_policy: str = "exclude",
) -> pd.DataFrame:
    """
    Sum counts over the sampling window.

    Missing counts are ignored in the sum. Sites with no count at all in the
    window are dropped ("exclude") or kept with a zero total ("absence").

    Returns:
        Copy of `df` with a `cum_count` column
    """
    available = week_columns(df)
    missing_weeks = [w for w in weeks if w not in available]
    if missing_weeks:
        raise EmptyInputError(f"Window weeks not in table: {missing_weeks}", item="weeks")

    cols = [available[w] for w in weeks]
    counts = df[cols].apply(pd.to_numeric, errors="coerce")
    all_missing = counts.isna().all(axis=1)

    out = df.copy()
    out["cum_count"] = counts.sum(axis=1, skipna=True)

    if all_missing.any():
        n = int(all_missing.sum())
        if missing_policy == "exclude":
            logger.warning(f"{n} sites have no counts in weeks {list(weeks)}; excluding them")
            out = out[~all_missing]
        elif missing_policy == "absence":
            logger.warning(f"{n} sites have no counts in weeks {list(weeks)}; treating them as absences")
        else:
            raise ValueError(f"Unknown missing-count policy: {missing_policy}")
    return out.reset_index(drop=True)


def label_presence(df: pd.DataFrame) -> pd.DataFrame:
    """presence = 1 where cum_count > 0, else 0."""
    out = df.copy()
    out["presence"] = (out["cum_count"] > 0).astype(int)
    n_pres = int(out["presence"].sum())
    logger.info(f"Presence: {n_pres}  Absence: {len(out) - n_pres}")
    return out


def project_records(df: pd.DataFrame, src_crs: str, dst_crs: str) -> pd.DataFrame:
    """Add projected `x`, `y` columns (metric CRS) from longitude/latitude."""
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    xs, ys = transformer.transform(df["longitude"].to_numpy(), df["latitude"].to_numpy())
    out = df.copy()
    out["x"] = np.asarray(xs, dtype=float)
    out["y"] = np.asarray(ys, dtype=float)
    if not np.isfinite(out[["x", "y"]].to_numpy()).all():
        raise SpatialReferenceError(f"Records could not be projected to {dst_crs}", item=dst_crs)
    return out


def presences(df: pd.DataFrame, species: str) -> pd.DataFrame:
    """
    Presence records in calibration layout.

    Raises:
        EmptyInputError: if there are no presences
    """
    pres = df[df["presence"] == 1]
    if pres.empty:
        raise EmptyInputError("No presence records in the sampling window", item=species)
    return pd.DataFrame({
        "species": species,
        "longitude": pres["x"].to_numpy(),
        "latitude": pres["y"].to_numpy(),
    })


def kfold_assignment(n: int, k: int, seed: int) -> np.ndarray:
    """Fold number (1..k) per record: a seeded permutation of balanced labels."""
    if n == 0:
        return np.array([], dtype=int)
    labels = np.resize(np.arange(1, k + 1), n)
    rng = np.random.default_rng(seed)
    return rng.permutation(labels)


def kfold_split(
    df: pd.DataFrame,
    k: int = 4,
    seed: int = 1,
    test_fold: int = 1,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split records into training (folds != test_fold) and test (fold == test_fold).

    The same (records, k, seed) always gives the same split.
    """
    if k < 2:
        raise ValueError("k must be at least 2")
    if not 1 <= test_fold <= k:
        raise ValueError(f"test_fold must be within 1..{k}")
    folds = kfold_assignment(len(df), k, seed)
    train = df[folds != test_fold].reset_index(drop=True)
    test = df[folds == test_fold].reset_index(drop=True)
    logger.info(f"Split {len(df)} presences: {len(train)} train / {len(test)} test (k={k}, seed={seed})")
    return train, test


def write_calibration_sets(
    joint: pd.DataFrame,
    train: pd.DataFrame,
    test: pd.DataFrame,
    out_dir: str | Path,
) -> dict[str, Path]:
    """Write joint / train / test CSVs with columns species, longitude, latitude."""
    out_dir = Path(out_dir)
    paths = {}
    for name, frame in (("joint", joint), ("train", train), ("test", test)):
        paths[name] = write_csv(frame[CALIBRATION_COLUMNS], out_dir / f"{name}.csv")
    return paths


def prepare_occurrences(df: pd.DataFrame, config, dst_crs: str) -> dict[str, pd.DataFrame]:
    """
    Window, label, project and split sampling records.

    Args:
        df: Records from load_sampling_records
        config: OccurrenceConfig
        dst_crs: Metric CRS of the predictors

    Returns:
        Dict with "records" (all sites, labelled and projected), "joint",
        "train" and "test"
    """
    records = summarize_window(df, config.weeks, config.missing_policy)
    if records.empty:
        raise EmptyInputError("No sites with counts in the sampling window", item=str(config.weeks))
    records = label_presence(records)
    records = project_records(records, config.source_crs, dst_crs)
    joint = presences(records, config.species)
    train, test = kfold_split(joint, config.k_folds, config.seed, config.test_fold)
    return {"records": records, "joint": joint, "train": train, "test": test}
