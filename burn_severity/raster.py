"""
Small raster-algebra helpers shared by the pipeline stages.

Rasters are xarray objects on a ``(y, x)`` grid. No-data is NaN, declared
as the raster's nodata value through the rioxarray accessor.
"""

from typing import Union

import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from rasterio.transform import Affine

from .errors import GridMismatch

Raster = Union[xr.DataArray, xr.Dataset]

SPATIAL_DIMS = ('y', 'x')


def mark_nodata(raster: xr.DataArray) -> xr.DataArray:
    """Declare NaN as the nodata value of a float raster."""
    return raster.rio.write_nodata(np.nan, encoded=False)


def valid_mask(raster: xr.DataArray) -> xr.DataArray:
    """True where the raster holds data."""
    return raster.notnull()


def nodata_fraction(raster: xr.DataArray) -> float:
    if raster.size == 0:
        return 1.0
    return float(raster.isnull().sum()) / raster.size


def grid_of(raster: Raster):
    """(shape, y coords, x coords, crs) describing the raster grid."""
    missing = [d for d in SPATIAL_DIMS if d not in raster.dims]
    if missing:
        raise GridMismatch(f"Raster has no spatial dimension(s) {missing}: dims={tuple(raster.dims)}")
    shape = (raster.sizes['y'], raster.sizes['x'])
    return shape, raster['y'].values, raster['x'].values, raster.rio.crs


def assert_same_grid(a: Raster, b: Raster, what: str = 'rasters') -> None:
    """
    Raise GridMismatch unless two rasters share extent, resolution and alignment.

    No resampling is ever attempted.
    """
    shape_a, y_a, x_a, crs_a = grid_of(a)
    shape_b, y_b, x_b, crs_b = grid_of(b)

    if shape_a != shape_b:
        raise GridMismatch(f"Cannot combine {what}: shapes {shape_a} and {shape_b} differ")
    if not (np.array_equal(y_a, y_b) and np.array_equal(x_a, x_b)):
        raise GridMismatch(f"Cannot combine {what}: pixel coordinates are not aligned")
    if (crs_a is None) != (crs_b is None):
        raise GridMismatch(f"Cannot combine {what}: only one of them has a CRS ({crs_a or crs_b})")
    if crs_a is not None and crs_a != crs_b:
        raise GridMismatch(f"Cannot combine {what}: CRS {crs_a} and {crs_b} differ")


def copy_crs(target: Raster, source: Raster) -> Raster:
    crs = source.rio.crs
    if crs is None:
        return target
    return target.rio.write_crs(crs)


def _coordinate_step(coords: np.ndarray):
    if coords.size < 2:
        return None
    return float(coords[1] - coords[0])


def grid_transform(raster: Raster) -> Affine:
    """
    Affine transform of the raster grid.

    A raster one pixel tall or wide takes the missing pixel size from its
    stored GeoTransform, or else from the other axis (square pixels).

    Raises
    ------
    GridMismatch
        For a single-pixel raster without a stored GeoTransform
    """
    _, y, x, _ = grid_of(raster)
    step_x, step_y = _coordinate_step(x), _coordinate_step(y)
    if step_x is not None and step_y is not None:
        return raster.rio.transform(recalc=True)

    grid_mapping = raster.rio.grid_mapping
    if grid_mapping in raster.coords and 'GeoTransform' in raster.coords[grid_mapping].attrs:
        return raster.rio.transform()

    if step_x is None and step_y is None:
        raise GridMismatch("Cannot determine the pixel size of a single-pixel raster without a GeoTransform")
    if step_x is None:
        step_x = abs(step_y)
    if step_y is None:
        step_y = -abs(step_x)
    return Affine(step_x, 0.0, x[0] - step_x / 2, 0.0, step_y, y[0] - step_y / 2)
