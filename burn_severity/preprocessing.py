"""
Temporal compositing of Sentinel-2 scenes.

This module handles:
- Cloud masking using the Scene Classification Layer
- Reducing the scenes of one time window to a single composite
- The empty-composite marker used when nothing matched
"""

import logging
from typing import List, Optional

import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr

from .config import Region, TimeWindow, validate_cloud_ceiling
from .data_loader import RasterSource, build_datacube, filter_scenes
from .errors import EmptyComposite

LOGGER = logging.getLogger(__name__)


# SCL classification codes for invalid pixels
SCL_INVALID = [0, 1, 3, 7, 8, 9, 10]
# 0: NO_DATA
# 1: SATURATED_DEFECTIVE
# 3: CLOUD_SHADOW
# 7: CLOUD_LOW_PROBABILITY
# 8: CLOUD_MEDIUM_PROBABILITY
# 9: CLOUD_HIGH_PROBABILITY
# 10: THIN_CIRRUS

COMPOSITE_METHODS = ('median', 'mean', 'max')


def apply_cloud_mask(
    datacube: xr.Dataset,
    scl_var: str = 'scl',
    invalid_codes: Optional[List[int]] = None
) -> xr.Dataset:
    """
    Mask invalid pixels using Scene Classification Layer.

    Parameters
    ----------
    datacube : xr.Dataset
        Input datacube, optionally with an SCL variable
    scl_var : str
        Name of SCL variable in dataset
    invalid_codes : list
        SCL codes to mask. Default uses standard cloud/shadow codes.

    Returns
    -------
    xr.Dataset
        Cloud-masked datacube (invalid pixels = NaN) without the SCL variable
    """
    if invalid_codes is None:
        invalid_codes = SCL_INVALID

    if scl_var not in datacube:
        return datacube

    valid_mask = ~datacube[scl_var].isin(invalid_codes)
    bands = datacube.drop_vars(scl_var)
    return bands.where(valid_mask)


def empty_composite(window: TimeWindow, region: Region, cloud_ceiling: float) -> xr.Dataset:
    """Marker for a window with no matching scenes."""
    return xr.Dataset(attrs=_composite_attrs(window, region, cloud_ceiling, 'median', 0))


def is_empty_composite(composite: xr.Dataset) -> bool:
    return len(composite.data_vars) == 0 or composite.attrs.get('n_observations', 1) == 0


def _composite_attrs(window, region, cloud_ceiling, method, n_obs):
    return {
        'window_start': window.start.isoformat(),
        'window_end': window.end.isoformat(),
        'region': region.name,
        'cloud_ceiling': cloud_ceiling,
        'method': method,
        'n_observations': n_obs,
    }


def reduce_datacube(datacube: xr.Dataset, method: str = 'median') -> xr.Dataset:
    """
    Reduce a datacube over ``time``, ignoring masked pixels.

    Parameters
    ----------
    datacube : xr.Dataset
        Multi-temporal datacube
    method : str
        Aggregation method ('median', 'mean', 'max')

    Returns
    -------
    xr.Dataset
        Composite without a time dimension
    """
    if method == 'median':
        composite = datacube.median(dim='time', skipna=True)
    elif method == 'mean':
        composite = datacube.mean(dim='time', skipna=True)
    elif method == 'max':
        composite = datacube.max(dim='time', skipna=True)
    else:
        raise ValueError(f"Unknown method: {method}")
    return composite


def create_window_composite(
    source: RasterSource,
    window: TimeWindow,
    region: Region,
    cloud_ceiling: float,
    method: str = 'median',
    mask_clouds: bool = True,
    allow_empty: bool = False,
) -> xr.Dataset:
    """
    Create a cloud-filtered composite for one time window.

    Parameters
    ----------
    source : RasterSource
        Scene provider; its errors propagate unchanged
    window : TimeWindow
        Acquisition window [start, end)
    region : Region
        Scenes must intersect this polygon
    cloud_ceiling : float
        Scenes must have cloud cover strictly below this percentage
    method : str
        Aggregation method ('median', 'mean', 'max')
    mask_clouds : bool
        Mask SCL cloud/shadow pixels before reducing
    allow_empty : bool
        Return the empty-composite marker instead of raising

    Returns
    -------
    xr.Dataset
        Float32 composite with window/region metadata. No acquisition
        dates survive.

    Raises
    ------
    EmptyComposite
        If no scene matched and ``allow_empty`` is False
    """
    cloud_ceiling = validate_cloud_ceiling(cloud_ceiling)
    if method not in COMPOSITE_METHODS:
        raise ValueError(f"Unknown method: {method}")

    scenes = filter_scenes(source.query(window, region, cloud_ceiling), window, region, cloud_ceiling)
    n_obs = len(scenes)
    LOGGER.info(
        "Compositing %s over '%s': %d scene(s) with cloud cover < %.0f%%",
        window, region.name, n_obs, cloud_ceiling,
    )

    if n_obs == 0:
        if allow_empty:
            return empty_composite(window, region, cloud_ceiling)
        raise EmptyComposite(window, region, cloud_ceiling)

    datacube = build_datacube(scenes)
    crs = datacube.rio.crs
    if mask_clouds:
        datacube = apply_cloud_mask(datacube)
    elif 'scl' in datacube:
        datacube = datacube.drop_vars('scl')

    composite = reduce_datacube(datacube.astype(np.float32), method).compute()
    composite = composite.drop_vars('time', errors='ignore')
    for band in composite.data_vars:
        composite[band].attrs = {}
    if crs is not None:
        composite = composite.rio.write_crs(crs)

    composite.attrs = _composite_attrs(window, region, cloud_ceiling, method, n_obs)

    return composite
