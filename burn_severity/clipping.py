"""
Region clipping: restrict rasters to polygonal areas of interest.

Pixels whose centres fall outside every region become no-data; the grid
itself is kept, so clipping is idempotent.
"""

import logging
from typing import List, Sequence, Union

import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from pyproj import CRS, Transformer
from rasterio.features import geometry_mask
from shapely.geometry import mapping
from shapely.ops import transform as transform_geometry

from .config import Region
from .raster import Raster, grid_of, grid_transform

LOGGER = logging.getLogger(__name__)

REGION_CRS = "EPSG:4326"


def _as_regions(regions: Union[Region, Sequence[Region]]) -> List[Region]:
    if isinstance(regions, Region):
        return [regions]
    regions = list(regions)
    if not regions:
        raise ValueError("At least one region is required for clipping")
    return regions


def region_geometries(regions: Union[Region, Sequence[Region]], crs=None) -> List[dict]:
    """
    GeoJSON geometries of the regions in the raster CRS.

    Only the vector outline is reprojected; rasters are never resampled.
    """
    polygons = [region.polygon for region in _as_regions(regions)]
    if crs is not None and not CRS.from_user_input(crs).is_geographic:
        transformer = Transformer.from_crs(REGION_CRS, crs, always_xy=True)
        polygons = [transform_geometry(transformer.transform, p) for p in polygons]
    return [mapping(p) for p in polygons]


def region_mask(raster: Raster, regions: Union[Region, Sequence[Region]]) -> xr.DataArray:
    """
    Boolean (y, x) mask, True inside any of the regions.

    Parameters
    ----------
    raster : xr.DataArray or xr.Dataset
        Raster defining the grid
    regions : Region or sequence of Region
        Areas of interest in lon/lat

    Returns
    -------
    xr.DataArray
        Mask on the raster grid (pixel-centre rule)
    """
    shape, y, x, crs = grid_of(raster)
    geometries = region_geometries(regions, crs)
    inside = geometry_mask(
        geometries,
        out_shape=shape,
        transform=grid_transform(raster),
        invert=True,
    )
    return xr.DataArray(inside, dims=('y', 'x'), coords={'y': y, 'x': x})


def _clip_array(da: xr.DataArray, inside: xr.DataArray) -> xr.DataArray:
    nodata = da.rio.nodata
    if np.issubdtype(da.dtype, np.integer) and nodata is not None:
        clipped = da.where(inside, nodata).astype(da.dtype)
    else:
        clipped = da.where(inside)
    clipped.attrs = dict(da.attrs)
    clipped.encoding = dict(da.encoding)
    return clipped


def clip(raster: Raster, regions: Union[Region, Sequence[Region]]) -> Raster:
    """
    Restrict a raster to the interior of one or more regions.

    Parameters
    ----------
    raster : xr.DataArray or xr.Dataset
        Raster to clip
    regions : Region or sequence of Region
        Areas of interest

    Returns
    -------
    xr.DataArray or xr.Dataset
        Same grid; outside pixels are no-data (NaN, or the declared nodata
        value for integer rasters)
    """
    inside = region_mask(raster, regions)
    n_inside = int(inside.sum())
    LOGGER.debug(
        "Clipping to %s: %d/%d pixels inside",
        [r.name for r in _as_regions(regions)], n_inside, inside.size,
    )
    if n_inside == 0:
        LOGGER.warning("No pixel centre falls inside the clip region(s); result is all no-data")

    if isinstance(raster, xr.Dataset):
        clipped = raster.copy()
        for name in raster.data_vars:
            clipped[name] = _clip_array(raster[name], inside)
        clipped.attrs = dict(raster.attrs)
        return clipped

    return _clip_array(raster, inside)
