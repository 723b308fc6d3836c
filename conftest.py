"""
Shared fixtures: a small synthetic study area in UTM 20S.
"""

import numpy as np
import pandas as pd
import pytest

from nichemap.config import DEFAULT_CRS
from nichemap.rasters import GridSpec, Raster, write_raster

# 400 m x 400 m at 10 m cells, south of Cordoba
ORIGIN = (380000.0, 6520000.0)
SIZE = 400.0
RESOLUTION = 10.0


@pytest.fixture
def grid():
    x0, y0 = ORIGIN
    return GridSpec.from_bounds((x0, y0, x0 + SIZE, y0 + SIZE), RESOLUTION, DEFAULT_CRS)


@pytest.fixture
def predictor_layers(grid):
    """Three smooth layers; suitability rises with `ndvi` and falls with `dist_water`."""
    rng = np.random.default_rng(0)
    xs, ys = grid.cell_centers()
    u = (xs - xs.min()) / (xs.max() - xs.min())
    v = (ys - ys.min()) / (ys.max() - ys.min())
    return {
        "ndvi": u + rng.normal(0, 0.02, grid.shape),
        "dist_water": v * 300 + rng.normal(0, 5, grid.shape),
        "texture": rng.uniform(0, 1, grid.shape),
    }


@pytest.fixture
def predictor_dir(tmp_path, grid, predictor_layers):
    directory = tmp_path / "predictors"
    for name, arr in predictor_layers.items():
        write_raster(Raster(arr, grid, name=name), directory / f"{name}.tif")
    return directory


@pytest.fixture
def presence_points(grid):
    """Projected presences clustered where ndvi is high and water is close."""
    rng = np.random.default_rng(1)
    x0, y0 = ORIGIN
    xs = x0 + rng.uniform(0.6, 0.95, 40) * SIZE
    ys = y0 + rng.uniform(0.05, 0.4, 40) * SIZE
    return pd.DataFrame({"species": "Aedes aegypti", "longitude": xs, "latitude": ys})


def sampling_table(n_present: int, n_absent: int, weeks=(49, 50, 51), seed: int = 0) -> pd.DataFrame:
    """Ovitrap sites near Cordoba with weekly egg counts."""
    rng = np.random.default_rng(seed)
    n = n_present + n_absent
    df = pd.DataFrame({
        "ID": [f"S{i:03d}" for i in range(n)],
        "Long": rng.uniform(-64.25, -64.10, n),
        "Lat": rng.uniform(-31.47, -31.37, n),
    })
    for w in weeks:
        counts = np.zeros(n)
        counts[:n_present] = rng.integers(0, 30, n_present)
        df[f"w{w}"] = counts
    # every present site has eggs in the first window week
    df.loc[: n_present - 1, f"w{weeks[0]}"] += 1
    return df


@pytest.fixture
def records_file(tmp_path):
    path = tmp_path / "ovitraps.txt"
    sampling_table(10, 90).to_csv(path, sep="\t", index=False)
    return path


@pytest.fixture
def make_sampling_table():
    return sampling_table
