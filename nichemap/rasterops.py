"""
Raster operations used to derive predictors from a multispectral scene.

All functions take and return plain 2-D float arrays with NaN as nodata;
georeferencing is handled by the workspace.
"""

import logging
from typing import Callable, Optional

import numpy as np
from joblib import Parallel, delayed
from scipy.ndimage import distance_transform_edt, uniform_filter
from sklearn.cluster import KMeans
from sklearn.mixture import GaussianMixture

logger = logging.getLogger(__name__)

# Pixel offsets (row, col) for the four GLCM directions: 0, 45, 90, 135 degrees
GLCM_DIRECTIONS = ((0, 1), (-1, 1), (-1, 0), (-1, -1))


# ---------------------------------------------------------------------------
# Radiometry and indices
# ---------------------------------------------------------------------------

def toa_radiance(dn: np.ndarray, gain: float, bias: float = 0.0) -> np.ndarray:
    """Top-of-atmosphere radiance from digital numbers: DN / gain + bias."""
    if gain <= 0:
        raise ValueError(f"Gain must be positive, got {gain}")
    return dn / gain + bias


def dos_reflectance(
    radiance: np.ndarray,
    esun: float,
    sun_elevation: float,
    earth_sun_distance: float = 1.0,
    dark_percentile: float = 0.01,
) -> np.ndarray:
    """
    Dark-object subtraction (DOS1) to surface reflectance, rescaled to [0, 1].

    The path radiance is the darkest radiance in the scene minus the radiance
    of a 1% reflectance target.
    """
    valid = radiance[~np.isnan(radiance)]
    if valid.size == 0:
        return np.full_like(radiance, np.nan)

    cos_zenith = np.cos(np.radians(90.0 - sun_elevation))
    d2 = earth_sun_distance ** 2
    dark = np.percentile(valid, dark_percentile)
    one_percent = 0.01 * esun * cos_zenith / (np.pi * d2)
    path_radiance = max(dark - one_percent, 0.0)

    reflectance = np.pi * (radiance - path_radiance) * d2 / (esun * cos_zenith)
    return np.clip(reflectance, 0.0, 1.0)


def normalized_difference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """(a - b) / (a + b), NaN where the sum is zero."""
    with np.errstate(invalid="ignore", divide="ignore"):
        out = (a - b) / (a + b)
    out[~np.isfinite(out)] = np.nan
    return out


def ndvi(red: np.ndarray, nir: np.ndarray) -> np.ndarray:
    return normalized_difference(nir, red)


def ndwi(green: np.ndarray, nir: np.ndarray) -> np.ndarray:
    """McFeeters NDWI."""
    return normalized_difference(green, nir)


# ---------------------------------------------------------------------------
# Moving-window statistics
# ---------------------------------------------------------------------------

def _window_mean(values: np.ndarray, valid: np.ndarray, size: int) -> tuple[np.ndarray, np.ndarray]:
    """Mean of `values` over valid cells in each window, and the valid fraction."""
    filled = np.where(valid, values, 0.0)
    frac = uniform_filter(valid.astype(float), size=size, mode="constant", cval=0.0)
    total = uniform_filter(filled, size=size, mode="constant", cval=0.0)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = np.where(frac > 1e-12, total / frac, np.nan)
    return mean, frac


def neighborhood_average(arr: np.ndarray, size: int) -> np.ndarray:
    valid = ~np.isnan(arr)
    mean, _ = _window_mean(arr, valid, size)
    mean[~valid] = np.nan
    return mean


def neighborhood_stddev(arr: np.ndarray, size: int) -> np.ndarray:
    valid = ~np.isnan(arr)
    mean, _ = _window_mean(arr, valid, size)
    mean_sq, _ = _window_mean(arr ** 2, valid, size)
    sd = np.sqrt(np.clip(mean_sq - mean ** 2, 0.0, None))
    sd[~valid] = np.nan
    return sd


def class_proportions(classes: np.ndarray, size: int) -> dict[int, np.ndarray]:
    """Proportion of each class among the valid cells of every window."""
    valid = ~np.isnan(classes)
    frac = uniform_filter(valid.astype(float), size=size, mode="constant", cval=0.0)
    proportions = {}
    for value in np.unique(classes[valid]):
        indicator = (classes == value).astype(float)
        share = uniform_filter(indicator, size=size, mode="constant", cval=0.0)
        with np.errstate(invalid="ignore", divide="ignore"):
            proportions[int(value)] = np.where(frac > 1e-12, share / frac, 0.0)
    return proportions


def _from_proportions(classes: np.ndarray, size: int, reducer: Callable) -> np.ndarray:
    proportions = class_proportions(classes, size)
    if not proportions:
        return np.full(classes.shape, np.nan)
    stacked = np.stack(list(proportions.values()))
    out = reducer(stacked, np.array(list(proportions.keys())))
    out = out.astype(float)
    out[np.isnan(classes)] = np.nan
    return out


def shannon_diversity(classes: np.ndarray, size: int) -> np.ndarray:
    def reducer(p, _keys):
        with np.errstate(invalid="ignore", divide="ignore"):
            terms = np.where(p > 0, p * np.log(p), 0.0)
        return -terms.sum(axis=0)
    return _from_proportions(classes, size, reducer)


def simpson_diversity(classes: np.ndarray, size: int) -> np.ndarray:
    return _from_proportions(classes, size, lambda p, _keys: 1.0 - (p ** 2).sum(axis=0))


def richness(classes: np.ndarray, size: int) -> np.ndarray:
    """Number of distinct classes in each window."""
    return _from_proportions(classes, size, lambda p, _keys: (p > 1e-9).sum(axis=0))


def mode(classes: np.ndarray, size: int) -> np.ndarray:
    """Most frequent class in each window (lowest class wins ties)."""
    return _from_proportions(classes, size, lambda p, keys: keys[np.argmax(p, axis=0)])


def interspersion(classes: np.ndarray, size: int) -> np.ndarray:
    """Percentage of window cells whose class differs from the center cell."""
    proportions = class_proportions(classes, size)
    out = np.full(classes.shape, np.nan)
    valid = ~np.isnan(classes)
    for value, share in proportions.items():
        here = valid & (classes == value)
        out[here] = 100.0 * (1.0 - share[here])
    return out


# ---------------------------------------------------------------------------
# Texture (grey-level co-occurrence, symmetric, averaged over 4 directions)
# ---------------------------------------------------------------------------

def quantize(arr: np.ndarray, levels: int) -> np.ndarray:
    """Rescale valid values linearly into integer grey levels 0..levels-1."""
    valid = ~np.isnan(arr)
    out = np.full(arr.shape, np.nan)
    if not valid.any():
        return out
    lo, hi = np.nanmin(arr), np.nanmax(arr)
    if hi == lo:
        out[valid] = 0
        return out
    out[valid] = np.floor((arr[valid] - lo) / (hi - lo) * levels).clip(0, levels - 1)
    return out


def _shift(arr: np.ndarray, dr: int, dc: int) -> np.ndarray:
    """Neighbor value at offset (dr, dc) for each cell; NaN beyond the edge."""
    out = np.full(arr.shape, np.nan)
    h, w = arr.shape
    src_r = slice(max(dr, 0), h + min(dr, 0))
    src_c = slice(max(dc, 0), w + min(dc, 0))
    dst_r = slice(max(-dr, 0), h + min(-dr, 0))
    dst_c = slice(max(-dc, 0), w + min(-dc, 0))
    out[dst_r, dst_c] = arr[src_r, src_c]
    return out


def glcm_texture(grey: np.ndarray, size: int, method: str, levels: int) -> np.ndarray:
    """
    GLCM texture measure over a moving window on a quantized image.

    Args:
        grey: Grey levels 0..levels-1 (NaN for nodata), see `quantize`
        size: Window size in cells
        method: "entropy", "contrast" or "correlation"
        levels: Number of grey levels

    Returns:
        Texture raster, NaN where the center cell is nodata
    """
    if method not in ("entropy", "contrast", "correlation"):
        raise ValueError(f"Unknown texture method: {method}")

    results = []
    for dr, dc in GLCM_DIRECTIONS:
        a = grey
        b = _shift(grey, dr, dc)
        pair = ~np.isnan(a) & ~np.isnan(b)
        a0 = np.where(pair, a, 0.0)
        b0 = np.where(pair, b, 0.0)

        if method == "contrast":
            value, _ = _window_mean((a0 - b0) ** 2, pair, size)
        elif method == "correlation":
            m, _ = _window_mean((a0 + b0) / 2.0, pair, size)
            sq, _ = _window_mean((a0 ** 2 + b0 ** 2) / 2.0, pair, size)
            ab, _ = _window_mean(a0 * b0, pair, size)
            var = sq - m ** 2
            with np.errstate(invalid="ignore", divide="ignore"):
                value = np.where(var > 1e-12, (ab - m ** 2) / var, 0.0)
        else:
            lo = np.minimum(a0, b0)
            hi = np.maximum(a0, b0)
            value = np.zeros(grey.shape)
            frac = uniform_filter(pair.astype(float), size=size, mode="constant", cval=0.0)
            for i in range(levels):
                for j in range(i, levels):
                    indicator = (pair & (lo == i) & (hi == j)).astype(float)
                    if not indicator.any():
                        continue
                    share = uniform_filter(indicator, size=size, mode="constant", cval=0.0)
                    with np.errstate(invalid="ignore", divide="ignore"):
                        f = np.where(frac > 1e-12, share / frac, 0.0)
                        # symmetric matrix: off-diagonal counts split over (i, j) and (j, i)
                        p = f if i == j else f / 2.0
                        value -= np.where(f > 0, f * np.log(np.where(p > 0, p, 1.0)), 0.0)
        results.append(value)

    out = np.mean(results, axis=0)
    out[np.isnan(grey)] = np.nan
    return out


def tiled(
    func: Callable[[np.ndarray], np.ndarray],
    arr: np.ndarray,
    tile_size: int,
    halo: int,
    n_jobs: int = 1,
) -> np.ndarray:
    """
    Apply a neighborhood function tile by tile.

    Each tile is padded with `halo` cells of its neighbors so window
    operations see the same context as on the full array; tiles are
    independent and run in parallel with joblib.
    """
    h, w = arr.shape
    if h <= tile_size and w <= tile_size:
        return func(arr)

    windows = []
    for r0 in range(0, h, tile_size):
        for c0 in range(0, w, tile_size):
            r1, c1 = min(r0 + tile_size, h), min(c0 + tile_size, w)
            pr0, pc0 = max(r0 - halo, 0), max(c0 - halo, 0)
            pr1, pc1 = min(r1 + halo, h), min(c1 + halo, w)
            windows.append(((r0, r1, c0, c1), (pr0, pr1, pc0, pc1)))

    logger.debug(f"Processing {len(windows)} tiles with {n_jobs} workers")
    parts = Parallel(n_jobs=n_jobs)(
        delayed(func)(arr[pr0:pr1, pc0:pc1]) for _, (pr0, pr1, pc0, pc1) in windows
    )

    out = np.full(arr.shape, np.nan)
    for ((r0, r1, c0, c1), (pr0, _, pc0, _)), part in zip(windows, parts):
        out[r0:r1, c0:c1] = part[r0 - pr0:r1 - pr0, c0 - pc0:c1 - pc0]
    return out


# ---------------------------------------------------------------------------
# Classification and distances
# ---------------------------------------------------------------------------

def unsupervised_classes(
    bands: list[np.ndarray],
    n_classes: int,
    sample_step: int = 15,
    seed: Optional[int] = None,
) -> np.ndarray:
    """
    Cluster pixels into spectral classes.

    Signatures come from k-means on a regular subsample of pixels; every
    pixel is then assigned by Gaussian maximum likelihood. Classes are
    numbered 1..n_classes; NaN where any band is nodata.
    """
    stack = np.stack(bands, axis=-1)
    valid = ~np.isnan(stack).any(axis=-1)
    pixels = stack[valid]
    if len(pixels) < n_classes:
        raise ValueError(f"Only {len(pixels)} valid pixels for {n_classes} classes")

    sample_mask = np.zeros(valid.shape, dtype=bool)
    sample_mask[::sample_step, ::sample_step] = True
    sample = stack[valid & sample_mask]
    if len(sample) < n_classes:
        sample = pixels

    kmeans = KMeans(n_clusters=n_classes, n_init=10, random_state=seed).fit(sample)
    gmm = GaussianMixture(
        n_components=n_classes,
        covariance_type="full",
        means_init=kmeans.cluster_centers_,
        reg_covar=1e-6,
        random_state=seed,
    ).fit(sample)

    classes = np.full(valid.shape, np.nan)
    classes[valid] = gmm.predict(pixels) + 1
    return classes


def grow_distance(mask: np.ndarray, resolution: tuple[float, float]) -> np.ndarray:
    """
    Euclidean distance (map units) from every cell to the nearest True cell.

    Args:
        mask: Boolean feature mask
        resolution: (x, y) cell size
    """
    if not mask.any():
        logger.warning("Distance source has no cells; returning nodata")
        return np.full(mask.shape, np.nan)
    res_x, res_y = resolution
    return distance_transform_edt(~mask, sampling=(res_y, res_x))
