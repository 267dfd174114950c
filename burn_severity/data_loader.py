"""
Raster source adapters for Sentinel-2 scenes.

This module handles:
- The RasterSource query contract consumed by the compositor
- Strict scene filtering (half-open window, footprint, cloud ceiling)
- STAC catalog search and EOPF Zarr scene loading
- Multi-temporal datacube formation on a shared grid
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import dask
import numpy as np
import pandas as pd
import pystac_client
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from pyproj import CRS, Transformer
from pystac_client.exceptions import APIError
from rasterio.enums import Resampling
from rasterio.transform import from_origin
from shapely.geometry import Polygon, box, shape

from .config import TimeWindow, Region, _to_timestamp
from .errors import GridMismatch, SourceUnavailable

LOGGER = logging.getLogger(__name__)

DEFAULT_CATALOG_URL = "https://stac.core.eopf.eodc.eu"
DEFAULT_COLLECTION = "sentinel-2-l2a"

# band vocabulary -> (EOPF resolution group, variable)
EOPF_BAND_ASSETS = {
    'blue': ('r10m', 'b02'),
    'green': ('r10m', 'b03'),
    'red': ('r10m', 'b04'),
    'nir': ('r10m', 'b08'),
    'swir1': ('r20m', 'b11'),
    'swir2': ('r20m', 'b12'),
}
DEFAULT_BANDS = tuple(EOPF_BAND_ASSETS)

# EOPF stores scaled reflectance; multiply back to L2A digital numbers
REFLECTANCE_SCALE = 10000.0

# target grid of the STAC source: UTM zone 11N at the 10 m band resolution
DEFAULT_GRID_CRS = "EPSG:32611"
DEFAULT_RESOLUTION = 10.0


@dataclass(frozen=True)
class RasterScene:
    """
    One acquisition: named bands on a (y, x) grid.

    ``footprint`` is in lon/lat. When omitted it is derived from the data
    bounds.
    """

    data: xr.Dataset
    acquired: pd.Timestamp
    cloud_cover: float
    footprint: Optional[Polygon] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'acquired', _to_timestamp(self.acquired))
        object.__setattr__(self, 'cloud_cover', float(self.cloud_cover))

    @property
    def bands(self) -> List[str]:
        return list(self.data.data_vars)

    @property
    def extent(self) -> Polygon:
        if self.footprint is not None:
            return self.footprint
        west, south, east, north = (
            float(self.data.x.min()), float(self.data.y.min()),
            float(self.data.x.max()), float(self.data.y.max()),
        )
        crs = self.data.rio.crs
        if crs is not None and not crs.is_geographic:
            transformer = Transformer.from_crs(crs, "EPSG:4326", always_xy=True)
            west, south, east, north = transformer.transform_bounds(west, south, east, north)
        return box(west, south, east, north)


def _floor_to(value: float, step: float) -> float:
    return float(np.floor(round(value / step, 6)) * step)


def _ceil_to(value: float, step: float) -> float:
    return float(np.ceil(round(value / step, 6)) * step)


@dataclass(frozen=True, eq=False)
class RasterGrid:
    """
    North-up target grid: pixel-centre coordinates in one CRS.

    Built from a region alone, so every query over that region (pre- and
    post-event) lands on the same pixels whatever tiles the catalog returns.
    """

    crs: str
    x: np.ndarray
    y: np.ndarray
    resolution: float

    @classmethod
    def from_region(cls, region: Region, crs: str, resolution: float) -> 'RasterGrid':
        """
        Cover the region bounds with pixels whose edges are multiples of
        ``resolution`` (the Sentinel-2 tile alignment in UTM).
        """
        west, south, east, north = region.bounds
        if not CRS.from_user_input(crs).is_geographic:
            transformer = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
            west, south, east, north = transformer.transform_bounds(west, south, east, north)

        west, south = _floor_to(west, resolution), _floor_to(south, resolution)
        east, north = _ceil_to(east, resolution), _ceil_to(north, resolution)
        width = max(int(round((east - west) / resolution)), 1)
        height = max(int(round((north - south) / resolution)), 1)

        x = west + resolution * (np.arange(width) + 0.5)
        y = north - resolution * (np.arange(height) + 0.5)
        return cls(crs, x, y, float(resolution))

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.y.size, self.x.size)

    @property
    def transform(self):
        return from_origin(
            self.x[0] - self.resolution / 2, self.y[0] + self.resolution / 2,
            self.resolution, self.resolution,
        )


@runtime_checkable
class RasterSource(Protocol):
    """Anything that can answer a scene query."""

    def query(
        self, window: TimeWindow, region: Region, cloud_ceiling: float
    ) -> List[RasterScene]: ...


def filter_scenes(
    scenes: Iterable[RasterScene],
    window: TimeWindow,
    region: Region,
    cloud_ceiling: float,
) -> List[RasterScene]:
    """
    Keep scenes acquired in [start, end), intersecting the region and
    strictly below the cloud ceiling.
    """
    polygon = region.polygon
    return [
        scene for scene in scenes
        if window.contains(scene.acquired)
        and scene.cloud_cover < cloud_ceiling
        and scene.extent.intersects(polygon)
    ]


class InMemoryRasterSource:
    """Raster source over a fixed list of scenes."""

    def __init__(self, scenes: Sequence[RasterScene]):
        self.scenes = list(scenes)

    def query(self, window: TimeWindow, region: Region, cloud_ceiling: float) -> List[RasterScene]:
        matched = filter_scenes(self.scenes, window, region, cloud_ceiling)
        LOGGER.debug(
            "In-memory query %s over '%s': %d/%d scenes",
            window, region.name, len(matched), len(self.scenes),
        )
        return matched


def connect_stac_catalog(catalog_url: str = DEFAULT_CATALOG_URL):
    """
    Connect to the EOPF STAC catalog.

    Parameters
    ----------
    catalog_url : str
        STAC catalog endpoint URL

    Returns
    -------
    pystac_client.Client
        Connected STAC client
    """
    return pystac_client.Client.open(catalog_url)


def search_sentinel2(
    catalog,
    bbox: List[float],
    window: TimeWindow,
    cloud_ceiling: float,
    collection: str = DEFAULT_COLLECTION,
) -> List[Dict]:
    """
    Search for Sentinel-2 scenes in the catalog.

    The STAC datetime range is inclusive, so callers must still apply the
    half-open window (see filter_scenes).

    Parameters
    ----------
    catalog : pystac_client.Client
        Connected STAC client
    bbox : list
        Bounding box [west, south, east, north] in EPSG:4326
    window : TimeWindow
        Acquisition window
    cloud_ceiling : float
        Maximum scene cloud cover in percent (exclusive)
    collection : str
        STAC collection name

    Returns
    -------
    list
        List of STAC item dictionaries
    """
    search = catalog.search(
        collections=[collection],
        bbox=bbox,
        datetime=[window.start.to_pydatetime(), window.end.to_pydatetime()],
        query={"eo:cloud_cover": {"lt": cloud_ceiling}},
    )
    return list(search.items_as_dicts())


def reproject_bbox(
    bbox: List[float],
    src_crs: str = "EPSG:4326",
    dst_crs: str = "EPSG:32611"
) -> List[float]:
    """
    Transform bounding box between coordinate reference systems.

    Parameters
    ----------
    bbox : list
        Bounding box [xmin, ymin, xmax, ymax]
    src_crs : str
        Source CRS
    dst_crs : str
        Destination CRS

    Returns
    -------
    list
        Transformed bounding box [xmin, ymin, xmax, ymax]
    """
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    return list(transformer.transform_bounds(*bbox))


def load_single_scene(
    item_dict: Dict,
    bbox_ll: List[float],
    bands: Sequence[str] = DEFAULT_BANDS,
    include_scl: bool = True,
    reflectance_scale: float = REFLECTANCE_SCALE,
) -> RasterScene:
    """
    Load and crop a single Sentinel-2 scene from Zarr.

    20 m bands (SWIR, SCL) are regridded onto the 10 m grid with
    nearest-neighbour selection.

    Parameters
    ----------
    item_dict : dict
        STAC item dictionary
    bbox_ll : list
        Bounding box in EPSG:4326 [west, south, east, north]
    bands : sequence
        Band names from the pipeline vocabulary
    include_scl : bool
        Whether to include the Scene Classification Layer
    reflectance_scale : float
        Factor applied to reflectance values

    Returns
    -------
    RasterScene
        Cropped scene with bands renamed to the pipeline vocabulary
    """
    href = item_dict['assets']['SR_10m']['href']
    base_path = href.split('/measurements')[0]

    tree = xr.open_datatree(base_path, engine="zarr", chunks={}, mask_and_scale=True)

    dst_crs = item_dict['properties'].get("proj:code", "EPSG:32611")
    xmin, ymin, xmax, ymax = reproject_bbox(bbox_ll, dst_crs=dst_crs)

    def _crop(node):
        return node.to_dataset().sel(x=slice(xmin, xmax), y=slice(ymax, ymin))

    groups = {}
    for band in bands:
        group, var = EOPF_BAND_ASSETS[band]
        groups.setdefault(group, {})[var] = band

    reference = _crop(tree["measurements"]["reflectance"]["r10m"])
    layers = []
    for group, names in sorted(groups.items()):
        ds = reference if group == 'r10m' else _crop(tree["measurements"]["reflectance"][group])
        ds = ds[list(names)].rename(names)
        if group != 'r10m':
            LOGGER.info("Regridding %s bands %s onto the 10 m grid (nearest)", group, list(names.values()))
            ds = _reindex_nearest(ds, reference.x, reference.y, _pixel_size(ds) or _pixel_size(reference))
        layers.append(ds * reflectance_scale)

    if include_scl:
        scl = _crop(tree["conditions"]["mask"]["l2a_classification"]["r20m"])
        scl = _reindex_nearest(scl, reference.x, reference.y, _pixel_size(scl) or _pixel_size(reference))
        layers.append(scl[['scl']])

    merged = xr.merge(layers).rio.write_crs(dst_crs)

    props = item_dict['properties']
    footprint = shape(item_dict['geometry']) if item_dict.get('geometry') else None
    return RasterScene(
        data=merged,
        acquired=props['datetime'],
        cloud_cover=props.get('eo:cloud_cover', 100.0),
        footprint=footprint,
    )


def _pixel_size(ds) -> Optional[float]:
    """Largest coordinate step of the spatial axes, None for a single pixel."""
    steps = [abs(float(ds[d][1] - ds[d][0])) for d in ('x', 'y') if ds.sizes.get(d, 0) > 1]
    return max(steps) if steps else None


def _reindex_nearest(ds, x, y, pixel_size: Optional[float]):
    """
    Nearest-neighbour selection onto ``x``/``y``.

    Target pixels further than half a source pixel from any source pixel
    centre are not covered by the source and become NaN.
    """
    tolerance = pixel_size / 2 if pixel_size else None
    return ds.reindex(x=x, y=y, method="nearest", tolerance=tolerance)


def snap_to_grid(scenes: Sequence[RasterScene], grid: RasterGrid) -> List[RasterScene]:
    """
    Put every scene on a common target grid.

    Scenes in the grid CRS are regridded by nearest-neighbour selection;
    scenes in another CRS (a neighbouring UTM zone) are reprojected with
    nearest-neighbour resampling. Pixels a scene does not cover are NaN, so a
    median over the stacked scenes mosaics adjacent tiles.

    Parameters
    ----------
    scenes : sequence of RasterScene
        Scenes as loaded, possibly from different tiles
    grid : RasterGrid
        Target grid, normally ``RasterGrid.from_region``

    Returns
    -------
    list of RasterScene
        Scenes whose data share ``grid`` exactly
    """
    snapped = []
    for scene in scenes:
        data = scene.data
        crs = data.rio.crs
        on_grid = (
            np.array_equal(data.x.values, grid.x)
            and np.array_equal(data.y.values, grid.y)
        )
        if crs is not None and crs != grid.crs:
            LOGGER.warning(
                "Reprojecting scene %s from %s onto the %s target grid (nearest)",
                scene.acquired, crs, grid.crs,
            )
            data = data.astype(np.float64).rio.reproject(
                grid.crs,
                shape=grid.shape,
                transform=grid.transform,
                resampling=Resampling.nearest,
                nodata=np.nan,
            )
            data = data.assign_coords(x=grid.x, y=grid.y)
        elif not on_grid:
            LOGGER.info("Regridding scene %s onto the target grid (nearest)", scene.acquired)
            data = _reindex_nearest(data, grid.x, grid.y, max(_pixel_size(data) or 0, grid.resolution))
            data = data.rio.write_crs(grid.crs)
        else:
            snapped.append(scene)
            continue
        snapped.append(RasterScene(data, scene.acquired, scene.cloud_cover, scene.footprint))
    return snapped


def build_datacube(scenes: Sequence[RasterScene]) -> xr.Dataset:
    """
    Stack scenes along a ``time`` dimension.

    Parameters
    ----------
    scenes : sequence of RasterScene
        Scenes on an identical grid

    Returns
    -------
    xr.Dataset
        Multi-temporal datacube sorted by time

    Raises
    ------
    GridMismatch
        If the scenes do not share a grid
    """
    if len(scenes) == 0:
        raise ValueError("No scenes to stack")

    common = set(scenes[0].bands)
    for scene in scenes[1:]:
        common &= set(scene.bands)
    dropped = set().union(*(set(s.bands) for s in scenes)) - common
    if dropped:
        LOGGER.warning("Dropping bands not present in every scene: %s", sorted(dropped))
    band_order = [b for b in scenes[0].bands if b in common]

    crs = scenes[0].data.rio.crs
    for scene in scenes[1:]:
        if scene.data.rio.crs != crs:
            raise GridMismatch(f"Scene CRS {scene.data.rio.crs} differs from {crs}")

    stacked = [
        scene.data[band_order].expand_dims(time=[scene.acquired])
        for scene in scenes
    ]
    try:
        datacube = xr.concat(stacked, dim="time", join="exact", combine_attrs="drop")
    except ValueError as exc:
        raise GridMismatch(f"Scenes do not share a common grid: {exc}") from exc

    datacube = datacube.sortby("time")
    if crs is not None:
        datacube = datacube.rio.write_crs(crs)
    return datacube


class StacRasterSource:
    """
    Sentinel-2 L2A scenes from an EOPF STAC catalog.

    Every query over a region returns scenes on ``RasterGrid.from_region(region,
    grid_crs, resolution)``, so scenes from several tiles mosaic and the pre-
    and post-event composites share one grid. Catalog and I/O failures surface
    as SourceUnavailable; nothing is retried.
    """

    def __init__(
        self,
        catalog_url: str = DEFAULT_CATALOG_URL,
        collection: str = DEFAULT_COLLECTION,
        bands: Sequence[str] = DEFAULT_BANDS,
        include_scl: bool = True,
        parallel: bool = True,
        reflectance_scale: float = REFLECTANCE_SCALE,
        grid_crs: str = DEFAULT_GRID_CRS,
        resolution: float = DEFAULT_RESOLUTION,
        catalog=None,
    ):
        unknown = set(bands) - set(EOPF_BAND_ASSETS)
        if unknown:
            raise ValueError(f"Unknown bands: {sorted(unknown)}")
        self.catalog_url = catalog_url
        self.collection = collection
        self.bands = tuple(bands)
        self.include_scl = include_scl
        self.parallel = parallel
        self.reflectance_scale = reflectance_scale
        self.grid_crs = grid_crs
        self.resolution = float(resolution)
        self._catalog = catalog

    @property
    def catalog(self):
        if self._catalog is None:
            try:
                self._catalog = connect_stac_catalog(self.catalog_url)
            except (APIError, OSError) as exc:
                raise SourceUnavailable(f"Cannot open STAC catalog {self.catalog_url}: {exc}") from exc
        return self._catalog

    def _load(self, items: List[Dict], bbox: List[float]) -> Tuple[RasterScene, ...]:
        args = (bbox, self.bands, self.include_scl, self.reflectance_scale)
        if self.parallel:
            delayed_results = [dask.delayed(load_single_scene)(item, *args) for item in items]
            return dask.compute(*delayed_results)
        return tuple(load_single_scene(item, *args) for item in items)

    def query(self, window: TimeWindow, region: Region, cloud_ceiling: float) -> List[RasterScene]:
        bbox = list(region.bounds)
        try:
            items = search_sentinel2(self.catalog, bbox, window, cloud_ceiling, self.collection)
        except (APIError, OSError) as exc:
            raise SourceUnavailable(f"STAC search failed for {window}: {exc}") from exc

        LOGGER.info(
            "STAC search %s over '%s' (cloud < %.0f%%): %d items",
            window, region.name, cloud_ceiling, len(items),
        )
        if not items:
            return []

        try:
            scenes = list(self._load(items, bbox))
        except (OSError, KeyError) as exc:
            raise SourceUnavailable(f"Failed to load scenes for {window}: {exc}") from exc

        scenes = filter_scenes(scenes, window, region, cloud_ceiling)
        return snap_to_grid(scenes, RasterGrid.from_region(region, self.grid_crs, self.resolution))
