"""
Normalized-difference spectral indices.

Zero denominators (water, deep shadow) give no-data pixels rather than
NaN from a division by zero or an exception.
"""

import logging
from typing import Optional

import xarray as xr

from .errors import EmptyComposite
from .preprocessing import is_empty_composite
from .raster import copy_crs, mark_nodata, nodata_fraction

LOGGER = logging.getLogger(__name__)

# index name -> (band A, band B) for (A - B) / (A + B)
INDEX_BANDS = {
    'NBR': ('nir', 'swir2'),
    'NDVI': ('nir', 'red'),
}


def normalized_difference(
    composite: xr.Dataset,
    band_a: str,
    band_b: str,
    name: Optional[str] = None,
) -> xr.DataArray:
    """
    Compute (A - B) / (A + B) per pixel.

    Parameters
    ----------
    composite : xr.Dataset
        Composite containing both bands
    band_a, band_b : str
        Band names
    name : str, optional
        Index name stored in the ``index`` attribute

    Returns
    -------
    xr.DataArray
        Single-band index on the composite grid, clipped to [-1, 1]. No-data
        where either band is missing or A + B == 0.

    Raises
    ------
    EmptyComposite
        If the composite is the empty marker
    KeyError
        If a band is missing
    """
    if is_empty_composite(composite):
        raise EmptyComposite(message=(
            f"Cannot compute {name or 'index'}: composite for window "
            f"{composite.attrs.get('window_start')}..{composite.attrs.get('window_end')} "
            "has no observations"
        ))
    for band in (band_a, band_b):
        if band not in composite:
            raise KeyError(f"Band '{band}' not in composite (has {list(composite.data_vars)})")

    a = composite[band_a]
    b = composite[band_b]
    denominator = a + b
    index = ((a - b) / denominator.where(denominator != 0)).clip(-1, 1)

    index.name = name or f"nd_{band_a}_{band_b}"
    index.attrs = {'index': index.name, 'bands': f"{band_a},{band_b}"}
    index = mark_nodata(copy_crs(index, composite))

    LOGGER.debug("%s: %.1f%% no-data", index.name, 100 * nodata_fraction(index))
    return index


def compute_nbr(composite: xr.Dataset) -> xr.DataArray:
    """
    Normalized Burn Ratio.

    NBR = (NIR - SWIR2) / (NIR + SWIR2)
    """
    return compute_index(composite, 'NBR')


def compute_ndvi(composite: xr.Dataset) -> xr.DataArray:
    """
    Normalized Difference Vegetation Index.

    NDVI = (NIR - Red) / (NIR + Red)
    """
    return compute_index(composite, 'NDVI')


def compute_index(composite: xr.Dataset, kind: str, source: Optional[str] = None) -> xr.DataArray:
    """
    Compute a named index from ``INDEX_BANDS``.

    Parameters
    ----------
    composite : xr.Dataset
        Composite raster
    kind : str
        'NBR' or 'NDVI'
    source : str, optional
        Tag for the composite the index came from ('pre' / 'post')

    Returns
    -------
    xr.DataArray
        Index raster tagged with its kind and source
    """
    if kind not in INDEX_BANDS:
        raise ValueError(f"Unknown index: {kind} (expected one of {sorted(INDEX_BANDS)})")
    band_a, band_b = INDEX_BANDS[kind]
    index = normalized_difference(composite, band_a, band_b, name=kind)
    if source is not None:
        index.attrs['source'] = source
    return index
