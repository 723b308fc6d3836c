"""
Tests for sampling-window labelling, projection and fold splitting.
"""

import numpy as np
import pandas as pd
import pytest

from nichemap.config import OccurrenceConfig
from nichemap.errors import EmptyInputError, SpatialReferenceError
from nichemap.occurrence import (
    kfold_split,
    label_presence,
    load_sampling_records,
    prepare_occurrences,
    presences,
    project_records,
    summarize_window,
    week_columns,
    write_calibration_sets,
)


def test_load_renames_site_and_coordinates(records_file):
    df = load_sampling_records(records_file)
    assert df.columns[0] == "site"
    assert {"longitude", "latitude"} <= set(df.columns)
    assert week_columns(df) == {49: "w49", 50: "w50", 51: "w51"}
    assert len(df) == 100


def test_load_rejects_projected_coordinates(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"ID": ["a"], "Long": [380000.0], "Lat": [6520000.0], "w49": [1]}).to_csv(path, index=False)
    with pytest.raises(SpatialReferenceError):
        load_sampling_records(path)


def test_window_labels_ten_presences(records_file):
    df = load_sampling_records(records_file)
    labelled = label_presence(summarize_window(df, (49, 50, 51)))
    assert labelled["presence"].sum() == 10
    assert (labelled["presence"] == 0).sum() == 90
    assert (labelled.loc[labelled["presence"] == 1, "cum_count"] > 0).all()


def test_missing_counts_are_ignored_in_the_sum():
    df = pd.DataFrame({"site": [1, 2], "w49": [np.nan, 0], "w50": [3, np.nan], "w51": [np.nan, 0]})
    out = summarize_window(df, (49, 50, 51))
    assert list(out["cum_count"]) == [3, 0]


@pytest.mark.parametrize("policy, expected_sites", [("exclude", [1]), ("absence", [1, 2])])
def test_missing_policy(policy, expected_sites):
    df = pd.DataFrame({"site": [1, 2], "w49": [2, np.nan], "w50": [0, np.nan]})
    out = label_presence(summarize_window(df, (49, 50), missing_policy=policy))
    assert list(out["site"]) == expected_sites
    assert out["presence"].iloc[-1] == (1 if policy == "exclude" else 0)


def test_window_week_not_in_table():
    df = pd.DataFrame({"site": [1], "w49": [1]})
    with pytest.raises(EmptyInputError):
        summarize_window(df, (49, 50))


def test_projection_to_utm_20s():
    df = pd.DataFrame({"longitude": [-64.18], "latitude": [-31.42]})
    out = project_records(df, "EPSG:4326", "EPSG:32720")
    assert 300000 < out["x"].iloc[0] < 500000
    assert 6.4e6 < out["y"].iloc[0] < 6.6e6


def test_no_presences_raises():
    df = pd.DataFrame({"presence": [0, 0], "x": [1.0, 2.0], "y": [1.0, 2.0]})
    with pytest.raises(EmptyInputError):
        presences(df, "Aedes aegypti")


def test_kfold_is_deterministic_and_disjoint():
    df = pd.DataFrame({"longitude": np.arange(40.0), "latitude": np.arange(40.0)})
    train_a, test_a = kfold_split(df, k=4, seed=7, test_fold=2)
    train_b, test_b = kfold_split(df, k=4, seed=7, test_fold=2)
    pd.testing.assert_frame_equal(test_a, test_b)
    pd.testing.assert_frame_equal(train_a, train_b)
    assert len(test_a) == 10
    assert set(train_a["longitude"]).isdisjoint(test_a["longitude"])
    assert set(train_a["longitude"]) | set(test_a["longitude"]) == set(df["longitude"])


def test_kfold_seed_changes_split():
    df = pd.DataFrame({"longitude": np.arange(40.0), "latitude": np.arange(40.0)})
    _, test_a = kfold_split(df, k=4, seed=1)
    _, test_b = kfold_split(df, k=4, seed=2)
    assert set(test_a["longitude"]) != set(test_b["longitude"])


def test_kfold_rejects_bad_fold():
    df = pd.DataFrame({"longitude": [1.0, 2.0], "latitude": [1.0, 2.0]})
    with pytest.raises(ValueError):
        kfold_split(df, k=4, test_fold=5)


def test_prepare_and_write_sets(records_file, tmp_path):
    df = load_sampling_records(records_file)
    sets = prepare_occurrences(df, OccurrenceConfig(), "EPSG:32720")
    assert len(sets["joint"]) == 10
    assert len(sets["train"]) + len(sets["test"]) == 10

    paths = write_calibration_sets(sets["joint"], sets["train"], sets["test"], tmp_path / "occ")
    joint = pd.read_csv(paths["joint"])
    assert list(joint.columns) == ["species", "longitude", "latitude"]
    assert (joint["species"] == "Aedes aegypti").all()
    assert joint["longitude"].between(300000, 500000).all()
