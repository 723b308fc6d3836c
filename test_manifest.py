"""
Tests for the artifact manifest, atomic writes and configuration loading.
"""

import json

import pandas as pd
import pytest

from nichemap.config import REG_MULTS, load_config
from nichemap.errors import StageInputError
from nichemap.manifest import Manifest
from nichemap.storage import atomic_path, new_run_id, retry_io, write_csv, write_json


def test_register_and_reload(tmp_path):
    artifact = write_json({"a": 1}, tmp_path / "stage" / "out.json")
    manifest = Manifest.load(tmp_path)
    manifest.register("stage/out", artifact)

    reloaded = Manifest.load(tmp_path)
    assert "stage/out" in reloaded
    assert reloaded.entries["stage/out"] == "stage/out.json"
    assert reloaded.require("stage/out") == tmp_path / "stage" / "out.json"
    assert reloaded.names("stage/") == ["stage/out"]


def test_register_conflict(tmp_path):
    manifest = Manifest(tmp_path)
    manifest.register("final/mean", tmp_path / "a.tif")
    manifest.register("final/mean", tmp_path / "a.tif")
    with pytest.raises(ValueError):
        manifest.register("final/mean", tmp_path / "b.tif")
    manifest.register("final/mean", tmp_path / "b.tif", overwrite=True)
    assert manifest.resolve("final/mean") == tmp_path / "b.tif"


def test_require_missing_artifact(tmp_path):
    manifest = Manifest(tmp_path)
    with pytest.raises(StageInputError, match="final/mean"):
        manifest.require("final/mean")
    manifest.register("final/mean", tmp_path / "gone.tif")
    with pytest.raises(StageInputError):
        manifest.require("final/mean")


def test_atomic_path_leaves_nothing_on_failure(tmp_path):
    target = tmp_path / "table.csv"
    with pytest.raises(RuntimeError):
        with atomic_path(target) as tmp:
            tmp.write_text("partial")
            raise RuntimeError("interrupted")
    assert list(tmp_path.iterdir()) == []


def test_atomic_write_replaces(tmp_path):
    target = write_csv(pd.DataFrame({"a": [1]}), tmp_path / "t.csv")
    write_csv(pd.DataFrame({"a": [2]}), target)
    assert pd.read_csv(target)["a"].tolist() == [2]
    assert [p.name for p in tmp_path.iterdir()] == ["t.csv"]


def test_retry_io_retries_transient_errors():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("busy")
        return "ok"

    assert retry_io(flaky, delay=0) == "ok"
    assert len(calls) == 3


def test_retry_io_gives_up():
    def broken():
        raise OSError("disk")

    with pytest.raises(OSError):
        retry_io(broken, attempts=2, delay=0)
    with pytest.raises(FileNotFoundError):
        retry_io(open, "/nonexistent/file", delay=0)


def test_run_ids_are_unique():
    assert new_run_id("calibration") != new_run_id("calibration")
    assert new_run_id("render").startswith("render_")


def test_default_config():
    config = load_config()
    assert config.calibration.reg_mults == REG_MULTS
    assert len(config.calibration.feature_classes) == 9
    assert config.occurrence.weeks == (49, 50, 51)
    assert config.occurrence.missing_policy == "exclude"
    assert config.region.crs == "EPSG:32720"


def test_yaml_overrides(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "workdir: runs/cordoba\n"
        "occurrence:\n"
        "  weeks: [10, 11]\n"
        "  buffer_radius: 500\n"
        "calibration:\n"
        "  reg_mults: [0.5, 1, 2]\n"
        "  feature_classes: [l, lq]\n"
    )
    config = load_config(path)
    assert config.occurrence.weeks == (10, 11)
    assert config.occurrence.buffer_radius == 500
    assert config.calibration.reg_mults == (0.5, 1, 2)
    assert str(config.workdir) == "runs/cordoba"
    assert load_config(path, workdir=tmp_path).workdir == tmp_path


@pytest.mark.parametrize("text", [
    "calibration:\n  betamultiplier: 2\n",
    "plots:\n  dpi: 100\n",
    "calibration:\n  reg_mults: [2, 1]\n",
    "calibration:\n  replicate_type: jackknife\n",
    "occurrence:\n  missing_policy: zero\n",
])
def test_invalid_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    with pytest.raises(ValueError):
        load_config(path)


def test_write_json_is_readable(tmp_path):
    path = write_json({"selected": "M_1_F_l"}, tmp_path / "decision.json")
    assert json.loads(path.read_text()) == {"selected": "M_1_F_l"}
