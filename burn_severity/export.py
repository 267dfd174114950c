"""
Artifact export: named rasters and region boundaries.

This module handles:
- The Artifact record passed from the pipeline to a sink
- The ArtifactSink contract (store / discard)
- A local sink writing uncompressed GeoTIFF rasters and vector boundaries
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

import geopandas as gpd
import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from rasterio.errors import RasterioError

from .config import (
    EXPORT_CRS,
    EXPORT_FOLDER,
    EXPORT_MAX_PIXELS,
    EXPORT_SCALE,
    VECTOR_FORMAT,
    ExportSettings,
    Region,
)
from .errors import ExportLimitExceeded, SinkUnavailable

LOGGER = logging.getLogger(__name__)

RASTER_FORMAT = 'GTiff'
VECTOR_EXTENSIONS = {
    'GeoJSON': '.geojson',
    'KML': '.kml',
    'GPKG': '.gpkg',
}


@dataclass(frozen=True)
class Artifact:
    """A named output bound to the region it was clipped to."""

    name: str
    description: str
    kind: str  # 'raster' or 'vector'
    payload: Union[xr.DataArray, xr.Dataset, Region] = field(compare=False)
    region: Region
    file_format: Optional[str] = None

    def __post_init__(self):
        if self.kind not in ('raster', 'vector'):
            raise ValueError(f"Artifact kind must be 'raster' or 'vector', got {self.kind!r}")

    @classmethod
    def raster(cls, name: str, raster, region: Region, description: str = '') -> 'Artifact':
        return cls(name, description or name, 'raster', raster, region, RASTER_FORMAT)

    @classmethod
    def boundary(cls, name: str, region: Region, file_format: Optional[str] = None) -> 'Artifact':
        return cls(name, f"{region.name} boundary", 'vector', region, region, file_format)


@runtime_checkable
class ArtifactSink(Protocol):
    """Persists artifacts; failures raise SinkUnavailable."""

    def store(self, artifact: Artifact, destination: Optional[str] = None) -> Path: ...

    def discard(self, path: Path) -> None: ...


def raster_pixel_count(raster) -> int:
    return int(raster.sizes['y'] * raster.sizes['x'])


def _as_band_array(raster: Union[xr.DataArray, xr.Dataset]) -> xr.DataArray:
    """Stack composite bands into a (band, y, x) array for writing."""
    if isinstance(raster, xr.Dataset):
        crs = raster.rio.crs
        da = raster.to_array(dim='band')
        da.attrs['long_name'] = tuple(str(b) for b in da['band'].values)
        if crs is not None:
            da = da.rio.write_crs(crs)
        da = da.rio.write_nodata(np.nan, encoded=False)
        return da
    return raster


class LocalArtifactSink:
    """
    Write artifacts under ``root/<destination>/``.

    Rasters are uncompressed GeoTIFF; boundaries use the configured OGR
    vector driver.
    """

    def __init__(
        self,
        root: Union[str, Path],
        folder: str = EXPORT_FOLDER,
        scale: float = EXPORT_SCALE,
        max_pixels: float = EXPORT_MAX_PIXELS,
        crs: str = EXPORT_CRS,
        vector_format: str = VECTOR_FORMAT,
    ):
        if vector_format not in VECTOR_EXTENSIONS:
            raise ValueError(f"Unsupported vector format {vector_format!r}")
        self.root = Path(root)
        self.folder = folder
        self.scale = float(scale)
        self.max_pixels = max_pixels
        self.crs = crs
        self.vector_format = vector_format

    @classmethod
    def from_settings(cls, root: Union[str, Path], settings: ExportSettings) -> 'LocalArtifactSink':
        return cls(
            root,
            folder=settings.folder,
            scale=settings.scale,
            max_pixels=settings.max_pixels,
            crs=settings.crs,
            vector_format=settings.vector_format,
        )

    def _target(self, name: str, extension: str, destination: Optional[str]) -> Path:
        directory = self.root / (destination or self.folder)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SinkUnavailable(f"Cannot create export directory {directory}: {exc}") from exc
        return directory / f"{name}{extension}"

    def store(self, artifact: Artifact, destination: Optional[str] = None) -> Path:
        if artifact.kind == 'raster':
            return self._store_raster(artifact, destination)
        return self._store_vector(artifact, destination)

    def _store_raster(self, artifact: Artifact, destination: Optional[str]) -> Path:
        raster = _as_band_array(artifact.payload)

        n_pixels = raster_pixel_count(raster)
        if n_pixels > self.max_pixels:
            raise ExportLimitExceeded(
                f"{artifact.name}: {n_pixels} pixels exceeds the limit of {self.max_pixels:.0f}"
            )

        if raster.rio.crs is None:
            raster = raster.rio.write_crs(self.crs)

        res_x, res_y = raster.rio.resolution(recalc=True)
        if not (np.isclose(abs(res_x), self.scale) and np.isclose(abs(res_y), self.scale)):
            LOGGER.warning(
                "%s: native resolution (%g, %g) differs from export scale %g; writing at native resolution",
                artifact.name, abs(res_x), abs(res_y), self.scale,
            )

        path = self._target(artifact.name, '.tif', destination)
        try:
            raster.rio.to_raster(
                path,
                driver=RASTER_FORMAT,
                tags={'DESCRIPTION': artifact.description, 'REGION': artifact.region.name},
            )
        except (RasterioError, OSError) as exc:
            raise SinkUnavailable(f"Failed to write {path}: {exc}") from exc

        LOGGER.info("Exported raster %s (%d pixels) -> %s", artifact.name, n_pixels, path)
        return path

    def _store_vector(self, artifact: Artifact, destination: Optional[str]) -> Path:
        driver = artifact.file_format or self.vector_format
        if driver not in VECTOR_EXTENSIONS:
            raise ValueError(f"Unsupported vector format {driver!r}")

        region = artifact.payload
        gdf = gpd.GeoDataFrame(
            {'name': [artifact.name], 'description': [artifact.description]},
            geometry=[region.polygon],
            crs="EPSG:4326",
        )
        path = self._target(artifact.name, VECTOR_EXTENSIONS[driver], destination)
        try:
            gdf.to_file(path, driver=driver)
        except Exception as exc:  # OGR backends raise their own error types
            raise SinkUnavailable(f"Failed to write {path}: {exc}") from exc

        LOGGER.info("Exported boundary %s -> %s", artifact.name, path)
        return path

    def discard(self, path: Path) -> None:
        path = Path(path)
        if path.exists():
            os.remove(path)
            LOGGER.info("Discarded %s", path)
