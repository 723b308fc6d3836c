"""
Tests for feature classes, the in-process Maxent engine and the maxent.jar wrapper.
"""

import subprocess
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from nichemap.config import CalibrationConfig
from nichemap.engine import (
    CandidateModel,
    FeatureBuilder,
    MaxentEngine,
    MaxentJarEngine,
    candidate_id,
    make_engine,
    parse_feature_classes,
    parse_lambdas,
    validate_options,
)
from nichemap.errors import EmptyInputError, EngineError


@pytest.fixture
def swd():
    """Presences prefer high `a`; `b` is noise."""
    rng = np.random.default_rng(0)
    background = pd.DataFrame({"a": rng.uniform(0, 1, 500), "b": rng.uniform(0, 1, 500)})
    presence = pd.DataFrame({"a": rng.uniform(0.7, 1.0, 40), "b": rng.uniform(0, 1, 40)})
    return presence, background


def test_parse_feature_classes():
    assert parse_feature_classes("lqph") == ("linear", "quadratic", "product", "hinge")
    assert parse_feature_classes("hl") == ("linear", "hinge")
    assert parse_feature_classes("t") == ("threshold",)
    with pytest.raises(ValueError):
        parse_feature_classes("lx")
    with pytest.raises(ValueError):
        parse_feature_classes("")


@pytest.mark.parametrize("reg_mults", [[], [0.0], [-1.0], [float("nan")]])
def test_validate_rejects_bad_reg_mults(reg_mults):
    with pytest.raises(ValueError):
        validate_options(reg_mults=reg_mults)


def test_validate_rejects_bad_options():
    with pytest.raises(ValueError):
        validate_options(replicate_type="jackknife")
    with pytest.raises(ValueError):
        validate_options(output_format="probit")
    validate_options(reg_mults=[0.1, 2], feature_classes=["l", "lqp"], replicate_type="bootstrap",
                     output_format="cloglog")


def test_candidate_id():
    assert candidate_id(0.5, "lq") == "M_0.5_F_lq"
    assert candidate_id(2.0, "h") == "M_2_F_h"


def test_feature_builder_columns():
    X = np.array([[0.0, 10.0], [0.5, 20.0], [1.0, 30.0]])
    builder = FeatureBuilder(("linear", "quadratic", "product")).fit(X, ["a", "b"])
    F = builder.transform(X)
    assert F.shape == (3, 5)
    np.testing.assert_allclose(F[:, 0], [0.0, 0.5, 1.0])
    np.testing.assert_allclose(F[:, 2], [0.0, 0.25, 1.0])
    # values outside the training range are clamped
    assert builder.transform(np.array([[2.0, 40.0]]))[0, 0] == 1.0
    assert np.isnan(builder.transform(np.array([[np.nan, 20.0]]))).all()


def test_fit_predict_ranges(swd):
    presence, background = swd
    model = MaxentEngine().fit(presence, background, reg_mult=1.0, features="lq")
    assert model.model_id == "M_1_F_lq"
    assert model.predictors == ["a", "b"]

    for output in ("cloglog", "logistic"):
        pred = model.predict(background, output=output)
        assert ((pred >= 0) & (pred <= 1)).all()
    raw = model.predict(background, output="raw")
    assert raw.sum() == pytest.approx(1.0, rel=1e-6)

    high = model.predict(pd.DataFrame({"a": [0.95], "b": [0.5]}))[0]
    low = model.predict(pd.DataFrame({"a": [0.05], "b": [0.5]}))[0]
    assert high > low


def test_nan_rows_predict_nan(swd):
    presence, background = swd
    model = MaxentEngine().fit(presence, background, reg_mult=1.0, features="l")
    pred = model.predict(pd.DataFrame({"a": [0.5, np.nan], "b": [0.5, 0.5]}))
    assert np.isfinite(pred[0]) and np.isnan(pred[1])
    with pytest.raises(ValueError):
        model.predict(background, output="probit")


def test_stronger_regularization_uses_fewer_parameters(swd):
    presence, background = swd
    engine = MaxentEngine()
    loose = engine.fit(presence, background, reg_mult=0.1, features="lqh")
    tight = engine.fit(presence, background, reg_mult=10.0, features="lqh")
    assert tight.n_parameters <= loose.n_parameters
    assert loose.n_parameters > 0


def test_predictor_subset(swd):
    presence, background = swd
    model = MaxentEngine().fit(presence, background, reg_mult=1.0, features="lh", predictors=["a"])
    assert model.predictors == ["a"]
    assert len(model.predict(background)) == len(background)


def test_save_and_load(swd, tmp_path):
    presence, background = swd
    model = MaxentEngine().fit(presence, background, reg_mult=0.5, features="lqp")
    path = model.save(tmp_path / "model.joblib")
    back = CandidateModel.load(path)
    np.testing.assert_allclose(back.predict(background), model.predict(background))


def test_jar_command(tmp_path):
    engine = MaxentJarEngine("/opt/maxent/maxent.jar", tmp_path, species="Aedes aegypti")
    cmd = engine.command(tmp_path / "s.csv", tmp_path / "b.csv", tmp_path, 0.5, "lq")
    assert cmd[:4] == ["java", "-mx2g", "-jar", "/opt/maxent/maxent.jar"]
    assert "betamultiplier=0.5" in cmd
    assert "linear=true" in cmd and "quadratic=true" in cmd
    assert "hinge=false" in cmd and "product=false" in cmd and "threshold=false" in cmd
    assert engine.species == "Aedes_aegypti"


def test_jar_failure_raises_engine_error(swd, tmp_path, monkeypatch):
    presence, background = swd

    def fail(command, **kwargs):
        return subprocess.CompletedProcess(command, 1, stdout="", stderr="Error: no samples")

    monkeypatch.setattr(subprocess, "run", fail)
    engine = MaxentJarEngine("maxent.jar", tmp_path)
    with pytest.raises(EngineError) as info:
        engine.fit(presence, background, reg_mult=1.0, features="l")
    assert info.value.params == {"reg_mult": 1.0, "features": "l"}
    assert info.value.command[0] == "java"


def test_jar_timeout_raises_engine_error(swd, tmp_path, monkeypatch):
    presence, background = swd

    def hang(command, timeout=None, **kwargs):
        raise subprocess.TimeoutExpired(command, timeout)

    monkeypatch.setattr(subprocess, "run", hang)
    with pytest.raises(EngineError, match="timed out"):
        MaxentJarEngine("maxent.jar", tmp_path, timeout=1).fit(presence, background, 1.0, "l")


def test_parse_lambdas(tmp_path):
    path = tmp_path / "species.lambdas"
    path.write_text(
        "a, 1.5, 0.0, 1.0\n"
        "b^2, -0.5, 0.0, 1.0\n"
        "a*b, 0.0, 0.0, 1.0\n"
        "'a, 0.8, 0.3, 1.0\n"
        "`b, 0.4, 0.0, 0.6\n"
        "(0.5<a), 0.2, 0.0, 1.0\n"
        "linearPredictorNormalizer, 2.0\n"
        "densityNormalizer, 50.0\n"
        "numBackgroundPoints, 500\n"
        "entropy, 5.9\n"
    )
    terms, log_normalizer, entropy = parse_lambdas(path, ["a", "b"])
    kinds = [t.kind for t in terms.terms]
    assert kinds == ["linear", "quadratic", "forward_hinge", "reverse_hinge", "threshold"]
    assert log_normalizer == pytest.approx(2.0 + np.log(50.0))
    assert entropy == 5.9

    F = terms.transform(np.array([[0.6, 0.2]]))
    np.testing.assert_allclose(F[0], [0.6, 0.04, (0.6 - 0.3) / 0.7, (0.6 - 0.2) / 0.6, 1.0])


def test_parse_lambdas_missing_header(tmp_path):
    path = tmp_path / "bad.lambdas"
    path.write_text("a, 1.0, 0.0, 1.0\n")
    with pytest.raises(ValueError):
        parse_lambdas(path, ["a"])


def test_make_engine(tmp_path):
    assert isinstance(make_engine(CalibrationConfig(), tmp_path), MaxentEngine)
    jar = make_engine(CalibrationConfig(engine="maxent-jar", maxent_jar="maxent.jar"), tmp_path)
    assert isinstance(jar, MaxentJarEngine)


def test_too_few_presences(swd):
    presence, background = swd
    with pytest.raises(EmptyInputError, match="M_1_F_l"):
        MaxentEngine().fit(presence.iloc[:1], background, 1.0, "l")


def test_jar_fits_write_separate_directories(swd, tmp_path, monkeypatch):
    presence, background = swd

    def fake_maxent(command, **kwargs):
        args = dict(arg.split("=", 1) for arg in command if "=" in arg)
        n_presence = len(pd.read_csv(args["samplesfile"]))
        Path(args["outputdirectory"], "species.lambdas").write_text(
            f"a, {n_presence:.1f}, 0.0, 1.0\n"
            "linearPredictorNormalizer, 0.0\n"
            "densityNormalizer, 1.0\n"
            "entropy, 1.0\n"
        )
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_maxent)
    engine = MaxentJarEngine("maxent.jar", tmp_path)
    train = engine.fit(presence.iloc[:3], background, 1.0, "l")
    joint = engine.fit(presence.iloc[:5], background, 1.0, "l")

    assert train.info["lambdas"] != joint.info["lambdas"]
    assert Path(train.info["lambdas"]).read_text().startswith("a, 3.0")
    assert Path(joint.info["lambdas"]).read_text().startswith("a, 5.0")
    assert train.coef.tolist() == [3.0] and joint.coef.tolist() == [5.0]
    assert len(list((tmp_path / "M_1_F_l").iterdir())) == 2
