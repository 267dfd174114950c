"""
Presentation-only rendering of composites and change rasters.

This module handles:
- Tone-mapping band combinations (min/max stretch + gamma) to 8-bit RGB
- Palette rendering of single-band change rasters
- Static quicklook figures

Nothing here feeds back into analytical values.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from matplotlib.colors import LinearSegmentedColormap

LOGGER = logging.getLogger(__name__)

RGB_BANDS = ('R', 'G', 'B')


@dataclass(frozen=True)
class VisParams:
    """Display stretch: value range, gamma, and either bands or a palette."""

    bands: Optional[Tuple[str, ...]] = None
    min: float = 0.0
    max: float = 1.0
    gamma: float = 1.0
    palette: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if not self.max > self.min:
            raise ValueError(f"VisParams max ({self.max}) must exceed min ({self.min})")
        if self.gamma <= 0:
            raise ValueError(f"VisParams gamma must be positive, got {self.gamma}")
        if self.bands is not None and len(self.bands) not in (1, 3):
            raise ValueError(f"VisParams takes 1 or 3 bands, got {len(self.bands)}")


def stretch(values: np.ndarray, params: VisParams) -> np.ndarray:
    """Map values to [0, 1]: linear min/max stretch followed by 1/gamma power."""
    scaled = np.clip((values - params.min) / (params.max - params.min), 0, 1)
    if params.gamma != 1.0:
        scaled = scaled ** (1.0 / params.gamma)
    return scaled


def make_colormap(palette: Sequence[str]) -> LinearSegmentedColormap:
    return LinearSegmentedColormap.from_list('palette', list(palette))


def _to_rgb_array(rgb: np.ndarray, valid: np.ndarray, template: xr.DataArray) -> xr.DataArray:
    out = np.where(valid[None, :, :], np.round(rgb * 255), 0).astype(np.uint8)
    da = xr.DataArray(
        out,
        dims=('band', 'y', 'x'),
        coords={'band': list(RGB_BANDS), 'y': template.y, 'x': template.x},
        name='visualized',
    )
    if template.rio.crs is not None:
        da = da.rio.write_crs(template.rio.crs)
    return da.rio.write_nodata(0, encoded=False)


def apply_palette(raster: xr.DataArray, params: VisParams) -> xr.DataArray:
    """
    Render a single-band raster through a linear palette.

    Parameters
    ----------
    raster : xr.DataArray
        Single-band (y, x) raster
    params : VisParams
        Must define a palette

    Returns
    -------
    xr.DataArray
        uint8 (band, y, x) RGB raster; no-data pixels are 0
    """
    if not params.palette:
        raise ValueError("apply_palette requires VisParams.palette")
    values = raster.values.astype(float)
    valid = np.isfinite(values)
    cmap = make_colormap(params.palette)
    rgba = cmap(stretch(np.where(valid, values, params.min), params))
    rgb = np.moveaxis(rgba[..., :3], -1, 0)
    return _to_rgb_array(rgb, valid, raster)


def visualize(
    raster: Union[xr.Dataset, xr.DataArray],
    params: VisParams,
) -> xr.DataArray:
    """
    Deterministic tone-mapping of a raster to 8-bit RGB.

    Multi-band composites use ``params.bands`` as (R, G, B); a single band
    with a palette is colour-mapped; a single band without a palette is
    rendered as grey.

    Parameters
    ----------
    raster : xr.Dataset or xr.DataArray
        Composite (bands as variables) or single-band raster
    params : VisParams
        Display stretch

    Returns
    -------
    xr.DataArray
        uint8 (band, y, x) raster with bands R, G, B; a pixel with no data in
        any source band is 0 in every channel
    """
    if isinstance(raster, xr.Dataset):
        if params.bands is None:
            raise ValueError("VisParams.bands is required to visualize a multi-band composite")
        missing = [b for b in params.bands if b not in raster]
        if missing:
            raise KeyError(f"Bands not in composite: {missing}")
        layers = [raster[b] for b in params.bands]
        template = layers[0]
    else:
        layers = [raster]
        template = raster

    if len(layers) == 1 and params.palette:
        return apply_palette(layers[0], params)

    values = np.stack([layer.values.astype(float) for layer in layers], axis=0)
    valid = np.all(np.isfinite(values), axis=0)
    rgb = stretch(np.where(np.isfinite(values), values, params.min), params)
    if rgb.shape[0] == 1:
        rgb = np.repeat(rgb, 3, axis=0)
    return _to_rgb_array(rgb, valid, template)


def plot_change_map(
    change: xr.DataArray,
    params: VisParams,
    title: Optional[str] = None,
    output_path: Optional[str] = None,
    figsize: Tuple[int, int] = (10, 6)
) -> plt.Figure:
    """
    Plot a change raster with its palette and a colorbar.

    Parameters
    ----------
    change : xr.DataArray
        Change raster (e.g. dNBR)
    params : VisParams
        Value range and palette
    title : str, optional
        Figure title; defaults to the change kind
    output_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        The generated figure
    """
    cmap = make_colormap(params.palette) if params.palette else matplotlib.colormaps['viridis']
    cmap = cmap.with_extremes(bad='#00000000')

    fig, ax = plt.subplots(figsize=figsize)
    im = ax.imshow(
        np.ma.masked_invalid(change.values),
        cmap=cmap,
        vmin=params.min,
        vmax=params.max,
        extent=[
            float(change.x.min()), float(change.x.max()),
            float(change.y.min()), float(change.y.max()),
        ],
    )
    fig.colorbar(im, ax=ax, label=change.attrs.get('change', change.name or 'value'))
    ax.set_title(title or change.attrs.get('change', 'Change'), fontsize=12, fontweight='bold')
    ax.set_xlabel('x')
    ax.set_ylabel('y')

    plt.tight_layout()

    if output_path:
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        plt.savefig(output_path, dpi=150, bbox_inches='tight')
        LOGGER.info("Saved quicklook: %s", output_path)

    return fig
