"""
Analysis configuration: regions, time windows and export settings.

This module handles:
- Region polygons (closed lon/lat rings) used for filtering and clipping
- Half-open time windows derived from the event date
- Reference deployment constants (Los Angeles, January 2025 Santa Ana winds)
- YAML overrides via load_config()
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
import yaml
from shapely.geometry import Polygon, mapping

from .errors import ConfigError
from .visualization import VisParams

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Band vocabulary (Sentinel-2 L2A)
# ---------------------------------------------------------------------------
SENTINEL2_BANDS = {
    'blue': 'B02',
    'green': 'B03',
    'red': 'B04',
    'nir': 'B08',
    'swir1': 'B11',
    'swir2': 'B12',
}
BAND_NAMES = tuple(SENTINEL2_BANDS)

# ---------------------------------------------------------------------------
# Reference deployment
# ---------------------------------------------------------------------------
EVENT_DATE = '2025-01-10'
CLOUD_CEILING = 20.0  # percent, scenes must be strictly below
PRE_EVENT_DAYS = 10
PRE_EVENT_GAP_DAYS = 1
POST_EVENT_DAYS = 10

REGIONAL_BOUNDARY = [
    (-119.28679363256086, 33.89937835176071),
    (-117.98766033177961, 33.89937835176071),
    (-117.98766033177961, 34.50814643679167),
    (-119.28679363256086, 34.50814643679167),
    (-119.28679363256086, 33.89937835176071),
]
URBAN_BOUNDARY = [
    (-118.57881690373861, 34.03323595790945),
    (-118.51719046941244, 34.03323595790945),
    (-118.51719046941244, 34.057771917726015),
    (-118.57881690373861, 34.057771917726015),
    (-118.57881690373861, 34.03323595790945),
]

EXPORT_FOLDER = 'LA Wildfire'
EXPORT_SCALE = 10.0  # ground units per pixel
EXPORT_MAX_PIXELS = 1e13
EXPORT_CRS = 'EPSG:4326'
VECTOR_FORMAT = 'GeoJSON'
ARTIFACT_PREFIX = 'LA'

TRUE_COLOR_PARAMS = VisParams(bands=('red', 'green', 'blue'), min=0, max=3000)
FALSE_COLOR_URBAN_PARAMS = VisParams(
    bands=('swir2', 'swir1', 'red'), min=0, max=10000, gamma=2.5
)
DNBR_PARAMS = VisParams(min=0, max=0.5, palette=('yellow', 'orange', 'red'))
DNDVI_PARAMS = VisParams(min=-0.5, max=0.5, palette=('white', 'pink', 'purple'))


def _to_timestamp(value) -> pd.Timestamp:
    """Naive UTC timestamp from a string, date or datetime."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert('UTC').tz_localize(None)
    return ts


@dataclass(frozen=True)
class Region:
    """
    Closed polygon of (longitude, latitude) vertices.

    A ring given without its closing vertex is closed automatically.
    """

    name: str
    vertices: Tuple[Tuple[float, float], ...]

    def __post_init__(self):
        try:
            verts = tuple((float(lon), float(lat)) for lon, lat in self.vertices)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Region '{self.name}': vertices must be (lon, lat) pairs") from exc

        if verts and verts[0] != verts[-1]:
            verts = verts + (verts[0],)
        if len(set(verts)) < 3:
            raise ConfigError(f"Region '{self.name}' needs at least 3 distinct vertices")

        object.__setattr__(self, 'vertices', verts)
        if not self.polygon.is_valid:
            raise ConfigError(f"Region '{self.name}' is not a valid polygon")

    @property
    def polygon(self) -> Polygon:
        return Polygon(self.vertices)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(west, south, east, north)"""
        return self.polygon.bounds

    def to_geojson(self) -> Dict:
        return mapping(self.polygon)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open date interval [start, end)."""

    start: pd.Timestamp
    end: pd.Timestamp

    def __post_init__(self):
        start = _to_timestamp(self.start)
        end = _to_timestamp(self.end)
        if not start < end:
            raise ConfigError(f"TimeWindow start {start} must be before end {end}")
        object.__setattr__(self, 'start', start)
        object.__setattr__(self, 'end', end)

    def contains(self, timestamp) -> bool:
        ts = _to_timestamp(timestamp)
        return self.start <= ts < self.end

    @classmethod
    def pre_event(
        cls,
        event_date,
        days_before: int = PRE_EVENT_DAYS,
        gap_days: int = PRE_EVENT_GAP_DAYS,
    ) -> 'TimeWindow':
        event = _to_timestamp(event_date)
        return cls(event - pd.Timedelta(days=days_before), event - pd.Timedelta(days=gap_days))

    @classmethod
    def post_event(cls, event_date, days_after: int = POST_EVENT_DAYS) -> 'TimeWindow':
        event = _to_timestamp(event_date)
        return cls(event, event + pd.Timedelta(days=days_after))

    def __str__(self):
        return f"[{self.start.date()}, {self.end.date()})"


def event_windows(
    event_date,
    days_before: int = PRE_EVENT_DAYS,
    gap_days: int = PRE_EVENT_GAP_DAYS,
    days_after: int = POST_EVENT_DAYS,
) -> Tuple[TimeWindow, TimeWindow]:
    """Return the (pre-event, post-event) windows around an event date."""
    return (
        TimeWindow.pre_event(event_date, days_before, gap_days),
        TimeWindow.post_event(event_date, days_after),
    )


def validate_cloud_ceiling(cloud_ceiling: float) -> float:
    ceiling = float(cloud_ceiling)
    if not 0 <= ceiling < 100:
        raise ConfigError(f"Cloud ceiling must be a percentage in [0, 100), got {cloud_ceiling}")
    return ceiling


@dataclass(frozen=True)
class ExportSettings:
    folder: str = EXPORT_FOLDER
    scale: float = EXPORT_SCALE
    max_pixels: float = EXPORT_MAX_PIXELS
    crs: str = EXPORT_CRS
    vector_format: str = VECTOR_FORMAT


@dataclass(frozen=True)
class AnalysisConfig:
    """Parameters shared by the regional and urban runs."""

    event_date: pd.Timestamp = field(default_factory=lambda: _to_timestamp(EVENT_DATE))
    cloud_ceiling: float = CLOUD_CEILING
    pre_event_days: int = PRE_EVENT_DAYS
    pre_event_gap_days: int = PRE_EVENT_GAP_DAYS
    post_event_days: int = POST_EVENT_DAYS
    regional: Region = field(default_factory=lambda: Region('MainBoundary', REGIONAL_BOUNDARY))
    urban: Region = field(default_factory=lambda: Region('UrbanBoundary', URBAN_BOUNDARY))
    artifact_prefix: str = ARTIFACT_PREFIX
    parallel: bool = True
    export: ExportSettings = field(default_factory=ExportSettings)

    def __post_init__(self):
        object.__setattr__(self, 'event_date', _to_timestamp(self.event_date))
        object.__setattr__(self, 'cloud_ceiling', validate_cloud_ceiling(self.cloud_ceiling))

    def windows(self) -> Tuple[TimeWindow, TimeWindow]:
        return event_windows(
            self.event_date,
            days_before=self.pre_event_days,
            gap_days=self.pre_event_gap_days,
            days_after=self.post_event_days,
        )


def _region_from_dict(key: str, data: Dict, default: Region) -> Region:
    if data is None:
        return default
    if not isinstance(data, dict):
        raise ConfigError(f"regions.{key} must be a mapping")
    return Region(
        name=data.get('name', default.name),
        vertices=data.get('coordinates', default.vertices),
    )


def load_config(path: Optional[str] = None) -> AnalysisConfig:
    """
    Load analysis configuration.

    Parameters
    ----------
    path : str, optional
        YAML file overriding any subset of the defaults. Without a path the
        reference deployment is returned.

    Returns
    -------
    AnalysisConfig
    """
    config = AnalysisConfig()
    if path is None:
        return config

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    overrides = {}
    for key in ('event_date', 'cloud_ceiling', 'pre_event_days', 'pre_event_gap_days',
                'post_event_days', 'artifact_prefix', 'parallel'):
        if key in raw:
            overrides[key] = raw[key]

    regions = raw.get('regions') or {}
    if 'regional' in regions:
        overrides['regional'] = _region_from_dict('regional', regions['regional'], config.regional)
    if 'urban' in regions:
        overrides['urban'] = _region_from_dict('urban', regions['urban'], config.urban)

    if 'export' in raw:
        export = raw['export'] or {}
        unknown = set(export) - set(ExportSettings.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"Unknown export settings: {sorted(unknown)}")
        overrides['export'] = replace(config.export, **export)

    unknown = set(raw) - set(overrides) - {'regions', 'export'}
    if unknown:
        LOGGER.warning("Ignoring unknown config keys: %s", sorted(unknown))

    config = replace(config, **overrides)
    LOGGER.info(
        "Loaded config from %s (event %s, cloud ceiling %.0f%%)",
        path, config.event_date.date(), config.cloud_ceiling,
    )
    return config
