"""
Tests for calibration runs, decision artifacts, variable reduction and the final ensemble.
"""

import json

import numpy as np
import pandas as pd
import pytest

from nichemap.calibration import (
    CalibrationRun,
    CalibrationStage,
    SWDData,
    calibrate_grid,
    fit_final_model,
    parse_candidate_id,
    prepare_swd,
    read_decision,
    reduce_variables,
    remove_correlated,
    replicate_splits,
    write_decision_artifact,
)
from nichemap.engine import MaxentEngine
from nichemap.errors import EngineError, StageInputError
from nichemap.evaluation import evaluation_table, select_candidates
from nichemap.predictors import PredictorStack


def test_stage_transitions_in_order(tmp_path):
    run = CalibrationRun("calibration_test", tmp_path)
    run.advance(CalibrationStage.CALIBRATING)
    run.advance(CalibrationStage.EVALUATING)
    with pytest.raises(RuntimeError):
        run.advance(CalibrationStage.FINAL_PROJECTION)
    with pytest.raises(RuntimeError):
        run.advance(CalibrationStage.CALIBRATING)
    run.advance(CalibrationStage.SELECTED)

    loaded = CalibrationRun.load(tmp_path)
    assert loaded.stage == CalibrationStage.SELECTED
    assert loaded.history == ["calibrating", "evaluating", "selected"]


def test_load_without_run_file(tmp_path):
    with pytest.raises(StageInputError):
        CalibrationRun.load(tmp_path)


def test_decision_round_trip(tmp_path):
    rows = [
        {"model": "M_0.5_F_lq", "reg_mult": 0.5, "features": "lq", "proc_pvalue": 0.0,
         "omission_rate": 0.0, "aicc": 10.0, "n_parameters": 3},
        {"model": "M_1_F_l", "reg_mult": 1.0, "features": "l", "proc_pvalue": 0.0,
         "omission_rate": 0.0, "aicc": 11.0, "n_parameters": 2},
    ]
    selection = select_candidates(evaluation_table(rows))
    path = write_decision_artifact(selection, tmp_path, "calibration_x")

    decision = read_decision(path)
    assert decision["selected"] == "M_0.5_F_lq"
    assert decision["retained"] == ["M_0.5_F_lq", "M_1_F_l"]
    assert (tmp_path / "candidates_ranked.csv").exists()
    assert len(pd.read_csv(tmp_path / "selected_models.csv")) == 2

    # the operator may pick another candidate
    decision["selected"] = "M_1_F_l"
    path.write_text(json.dumps(decision))
    assert parse_candidate_id(read_decision(path)["selected"]) == (1.0, "l")


def test_decision_without_selection(tmp_path):
    rows = [{"model": "M_1_F_l", "reg_mult": 1.0, "features": "l", "proc_pvalue": 0.5,
             "omission_rate": 0.0, "aicc": 11.0, "n_parameters": 2}]
    path = write_decision_artifact(select_candidates(evaluation_table(rows)), tmp_path, "calibration_y")
    assert json.loads(path.read_text())["status"] == "no_viable_model"
    with pytest.raises(StageInputError):
        read_decision(path)
    with pytest.raises(StageInputError):
        read_decision(tmp_path / "missing.json")


def test_parse_candidate_id():
    assert parse_candidate_id("M_0.1_F_lqph") == (0.1, "lqph")
    with pytest.raises(ValueError):
        parse_candidate_id("model_1")


@pytest.mark.parametrize("kind", ["bootstrap", "crossvalidate", "subsample"])
def test_replicate_splits(kind):
    splits = replicate_splits(20, 4, kind, seed=2)
    assert len(splits) == 4
    for train, test in splits:
        assert len(train) > 0
        if kind != "bootstrap":
            assert set(train).isdisjoint(test)
            assert len(set(train) | set(test)) == 20
    if kind == "crossvalidate":
        assert sorted(np.concatenate([test for _, test in splits])) == list(range(20))
    assert [t.tolist() for t, _ in replicate_splits(20, 4, kind, seed=2)] == [t.tolist() for t, _ in splits]


def test_replicate_splits_rejects_unknown_type():
    with pytest.raises(ValueError):
        replicate_splits(10, 2, "jackknife")


@pytest.fixture
def swd_and_stack(predictor_dir, presence_points):
    stack = PredictorStack.from_directory(predictor_dir)
    joint = presence_points
    train, test = joint.iloc[:30].reset_index(drop=True), joint.iloc[30:].reset_index(drop=True)
    return prepare_swd(stack, joint, train, test, background_size=400, seed=1), stack


def test_prepare_swd(swd_and_stack):
    swd, stack = swd_and_stack
    assert swd.predictors == stack.names
    assert len(swd.joint) == 40 and len(swd.train) == 30 and len(swd.test) == 10
    assert len(swd.background) == 400
    assert len(swd.area) == stack.grid.width * stack.grid.height
    assert isinstance(swd.select(["ndvi"]), SWDData)


def test_calibrate_grid(swd_and_stack, tmp_path):
    swd, stack = swd_and_stack
    table = calibrate_grid(MaxentEngine(), swd, stack, (0.5, 2.0), ("l", "lq"), tmp_path,
                           iterations=50, seed=1)
    assert list(table["model"]) == ["M_0.5_F_l", "M_2_F_l", "M_0.5_F_lq", "M_2_F_lq"]
    assert (tmp_path / "evaluation.csv").exists()
    for model_id in table["model"]:
        assert (tmp_path / model_id / "model.joblib").exists()
        assert (tmp_path / model_id / "prediction.tif").exists()
    assert table["w_aicc"].sum() == pytest.approx(1.0)


def test_variable_reduction_keeps_informative_predictor(swd_and_stack):
    swd, _ = swd_and_stack
    engine = MaxentEngine()

    def factory(names):
        return engine.fit(swd.train, swd.background, 1.0, "l", predictors=names)

    model, correlated = remove_correlated(factory, swd, threshold=0.7)
    assert correlated == []
    model, removed = reduce_variables(factory, swd, model, threshold=5.0)
    assert "ndvi" in model.predictors
    assert set(model.predictors) | set(removed) == set(swd.predictors)


def test_remove_correlated_drops_a_duplicate(swd_and_stack):
    swd, _ = swd_and_stack
    twin = SWDData(*(frame.assign(ndvi_copy=frame["ndvi"] * 2 + 1) for frame in
                     (swd.joint, swd.train, swd.test, swd.background, swd.area)))
    engine = MaxentEngine()
    _, removed = remove_correlated(
        lambda names: engine.fit(twin.train, twin.background, 1.0, "l", predictors=names), twin, threshold=0.7
    )
    assert len(removed) == 1 and removed[0] in ("ndvi", "ndvi_copy")


def test_fit_final_model(swd_and_stack, tmp_path):
    swd, stack = swd_and_stack
    final = fit_final_model(MaxentEngine(), swd, stack, 1.0, "l", tmp_path, replicates=3,
                            replicate_type="subsample", run_jackknife=True, seed=1)
    assert final.model_id == "M_1_F_l"
    assert final.mean.array.shape == stack.grid.shape
    valid = ~np.isnan(final.mean.array)
    assert ((final.mean.array[valid] >= 0) & (final.mean.array[valid] <= 1)).all()
    assert (final.stddev.array[valid] >= 0).all()
    assert len(final.replicates) == 3
    assert set(final.jackknife["variable"]) == set(swd.predictors)
    for name in ("mean", "stddev", "replicates", "jackknife", "roc"):
        assert final.paths[name].exists()
    assert len(list((tmp_path / "replicates").glob("*.joblib"))) == 3
    assert 0.5 < final.roc["auc"] <= 1.0


class QuadraticFailingEngine(MaxentEngine):
    def fit(self, presence, background, reg_mult, features, predictors=None):
        if "q" in features:
            raise ValueError("liblinear failed to converge")
        return super().fit(presence, background, reg_mult, features, predictors)


def test_failed_candidate_is_named(swd_and_stack, tmp_path):
    swd, stack = swd_and_stack
    with pytest.raises(EngineError, match="M_1_F_lq") as info:
        calibrate_grid(QuadraticFailingEngine(), swd, stack, (1.0,), ("l", "lq"), tmp_path, iterations=10, seed=1)
    assert info.value.item == "M_1_F_lq"
    assert info.value.params == {"reg_mult": 1.0, "features": "lq"}
    assert isinstance(info.value.__cause__, ValueError)
