"""
Tests for the accessible area and masking predictors to it.
"""

import numpy as np
import pytest

from nichemap.accessible import AccessibleArea, define_accessible_area
from nichemap.errors import EmptyInputError, SpatialReferenceError
from nichemap.predictors import PredictorStack, mask_to_area
from nichemap.rasters import GridSpec

CRS = "EPSG:32720"


def test_area_contains_every_presence():
    rng = np.random.default_rng(3)
    xs = 380000 + rng.uniform(0, 5000, 25)
    ys = 6520000 + rng.uniform(0, 5000, 25)
    area = define_accessible_area(xs, ys, 800, CRS)
    assert area.contains_all(xs, ys)
    assert not area.contains_all([xs.max() + 2000], [ys.max() + 2000])


def test_single_point_area_is_a_circle():
    area = define_accessible_area([0.0], [0.0], 100, CRS)
    assert area.area == pytest.approx(np.pi * 100 ** 2, rel=1e-3)
    assert area.bounds == pytest.approx((-100, -100, 100, 100))


def test_no_points_raises():
    with pytest.raises(EmptyInputError):
        define_accessible_area([], [], 800, CRS)


def test_file_round_trip(tmp_path):
    area = define_accessible_area([380000.0, 381000.0], [6520000.0, 6520500.0], 800, CRS)
    path = area.to_file(tmp_path / "area.geojson")
    back = AccessibleArea.from_file(path)
    assert back.radius == 800
    assert back.area == pytest.approx(area.area, rel=1e-6)
    assert back.contains_all([380000.0, 381000.0], [6520000.0, 6520500.0])


def _stack():
    grid = GridSpec.from_bounds((0, 0, 1000, 1000), 10, CRS)
    return PredictorStack({"a": np.ones(grid.shape), "b": np.arange(10000.0).reshape(grid.shape)}, grid)


def test_mask_to_area_crops_and_masks():
    stack_g = _stack()
    area = define_accessible_area([500.0], [500.0], 200, CRS)
    stack_m = mask_to_area(stack_g, area)

    assert stack_m.grid.shape == (40, 40)
    assert stack_m.grid.bounds == pytest.approx((300, 300, 700, 700))
    assert np.isnan(stack_m.layers["a"][0, 0])
    assert stack_m.layers["a"][20, 20] == 1.0
    assert not np.isnan(stack_g.layers["a"]).any()


def test_mask_to_area_rejects_other_crs():
    area = define_accessible_area([500.0], [500.0], 200, "EPSG:32721")
    with pytest.raises(SpatialReferenceError):
        mask_to_area(_stack(), area)
