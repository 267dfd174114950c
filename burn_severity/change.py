"""
Bitemporal change detection.

This module handles:
- Differencing pre/post index rasters (dNBR, dNDVI)
- Burn severity classification of dNBR
- Change statistics for run reports

Sign convention: change = pre - post, so positive values mean loss.
"""

import logging
from typing import Dict

import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr

from .raster import assert_same_grid, copy_crs, mark_nodata, nodata_fraction, valid_mask

LOGGER = logging.getLogger(__name__)

CHANGE_NAMES = {
    'NBR': 'dNBR',
    'NDVI': 'dNDVI',
}

# USGS FIREMON dNBR classes (Key & Benson, 2006)
SEVERITY_CLASSES = [
    # (code, label, lower bound inclusive)
    (0, 'enhanced_regrowth_high', -np.inf),
    (1, 'enhanced_regrowth_low', -0.25),
    (2, 'unburned', -0.10),
    (3, 'low', 0.10),
    (4, 'moderate_low', 0.27),
    (5, 'moderate_high', 0.44),
    (6, 'high', 0.66),
]
SEVERITY_NODATA = 255

# dNBR / dNDVI above this counts as loss in the statistics
LOSS_THRESHOLD = 0.10


def difference(index_pre: xr.DataArray, index_post: xr.DataArray) -> xr.DataArray:
    """
    Pixel-aligned difference of two index rasters.

    Parameters
    ----------
    index_pre : xr.DataArray
        Index computed from the pre-event composite
    index_post : xr.DataArray
        Same index from the post-event composite

    Returns
    -------
    xr.DataArray
        pre - post, no-data wherever either input is no-data

    Raises
    ------
    GridMismatch
        If the rasters differ in shape, coordinates or CRS
    """
    kind_pre = index_pre.attrs.get('index')
    kind_post = index_post.attrs.get('index')
    if kind_pre != kind_post:
        raise ValueError(f"Cannot difference different indices: {kind_pre} vs {kind_post}")

    assert_same_grid(index_pre, index_post, what=f"{kind_pre} rasters")

    change = index_pre - index_post
    name = CHANGE_NAMES.get(kind_pre, f"d{kind_pre}" if kind_pre else 'change')
    change.name = name
    change.attrs = {'change': name, 'index': kind_pre}
    change = mark_nodata(copy_crs(change, index_pre))

    LOGGER.info(
        "%s: mean %.3f over %.1f%% valid pixels",
        name, float(change.mean(skipna=True)) if change.notnull().any() else float('nan'),
        100 * (1 - nodata_fraction(change)),
    )
    return change


def classify_burn_severity(dnbr: xr.DataArray) -> xr.DataArray:
    """
    Classify dNBR into USGS burn severity classes.

    Parameters
    ----------
    dnbr : xr.DataArray
        dNBR change raster

    Returns
    -------
    xr.DataArray
        uint8 class codes from SEVERITY_CLASSES; SEVERITY_NODATA where dNBR
        has no data
    """
    values = dnbr.values
    bounds = [lower for _, _, lower in SEVERITY_CLASSES[1:]]
    with np.errstate(invalid='ignore'):
        codes = np.digitize(values, bounds).astype(np.uint8)
    codes[~np.isfinite(values)] = SEVERITY_NODATA

    classes = xr.DataArray(
        codes, dims=dnbr.dims, coords=dnbr.coords, name='burn_severity',
        attrs={'classes': ','.join(label for _, label, _ in SEVERITY_CLASSES)},
    )
    return classes.rio.write_nodata(SEVERITY_NODATA, encoded=False)


def compute_change_statistics(change: xr.DataArray, loss_threshold: float = LOSS_THRESHOLD) -> Dict:
    """
    Summarize a change raster.

    Parameters
    ----------
    change : xr.DataArray
        dNBR or dNDVI raster
    loss_threshold : float
        Values above this count as loss

    Returns
    -------
    dict
        Pixel counts, no-data fraction, value summary, loss percentage and,
        for dNBR, the percentage of valid pixels in each severity class
    """
    valid = valid_mask(change).values
    values = change.values[valid]
    n_valid = int(valid.sum())

    stats = {
        'change': change.attrs.get('change', change.name),
        'total_pixels': int(change.size),
        'valid_pixels': n_valid,
        'nodata_fraction': nodata_fraction(change),
    }

    if n_valid == 0:
        stats.update({'mean': np.nan, 'median': np.nan, 'min': np.nan, 'max': np.nan, 'loss_pct': np.nan})
        return stats

    stats.update({
        'mean': float(values.mean()),
        'median': float(np.median(values)),
        'min': float(values.min()),
        'max': float(values.max()),
        'loss_pct': 100 * float((values > loss_threshold).sum()) / n_valid,
    })

    if stats['change'] == 'dNBR':
        codes = classify_burn_severity(change).values[valid]
        for code, label, _ in SEVERITY_CLASSES:
            stats[f'{label}_pct'] = 100 * float((codes == code).sum()) / n_valid

    return stats
