import threading
from pathlib import Path

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest
import rioxarray  # noqa: F401
import xarray as xr

from burn_severity.config import AnalysisConfig, ExportSettings, Region
from burn_severity.data_loader import InMemoryRasterSource, RasterScene
from burn_severity.errors import SinkUnavailable

# 10 x 7 lon/lat grid at 0.01 degrees, pixel centres at .xx5
X = -118.595 + 0.01 * np.arange(10)
Y = 34.075 - 0.01 * np.arange(7)

# 6 x 3 pixel centres fall inside
AOI_COORDS = [(-118.58, 34.03), (-118.52, 34.03), (-118.52, 34.06), (-118.58, 34.06)]
# covers the whole grid
WIDE_COORDS = [(-118.7, 33.9), (-118.4, 33.9), (-118.4, 34.2), (-118.7, 34.2)]

UNBURNED = dict(blue=300.0, green=500.0, red=400.0, nir=3000.0, swir1=1500.0, swir2=1000.0)
BURNED = dict(blue=400.0, green=550.0, red=600.0, nir=1500.0, swir1=2200.0, swir2=2000.0)

PRE_DATES = ['2025-01-02T18:40:00', '2025-01-05T18:40:00', '2025-01-07T18:40:00']
POST_DATES = ['2025-01-12T18:40:00', '2025-01-15T18:40:00']


def make_dataset(bands, x=X, y=Y, crs='EPSG:4326'):
    shape = (len(y), len(x))
    data_vars = {
        name: (('y', 'x'), np.broadcast_to(np.asarray(value, dtype=float), shape).copy())
        for name, value in bands.items()
    }
    ds = xr.Dataset(data_vars, coords={'y': y, 'x': x})
    if crs is not None:
        ds = ds.rio.write_crs(crs)
    return ds


def make_scene(acquired, cloud_cover=5.0, x=X, y=Y, crs='EPSG:4326', footprint=None, **bands):
    values = dict(UNBURNED)
    values.update(bands)
    return RasterScene(make_dataset(values, x, y, crs), acquired, cloud_cover, footprint)


def make_index(values, name='NBR', source='pre', x=None, y=None, crs='EPSG:4326'):
    values = np.asarray(values, dtype=float)
    if y is None:
        y = Y[:values.shape[0]]
    if x is None:
        x = X[:values.shape[1]]
    da = xr.DataArray(values, dims=('y', 'x'), coords={'y': y, 'x': x}, name=name,
                      attrs={'index': name, 'source': source})
    if crs is not None:
        da = da.rio.write_crs(crs)
    return da


class MemorySink:
    """Artifact sink keeping artifacts in a dict."""

    def __init__(self, fail_on=None):
        self.stored = {}
        self.discarded = []
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def store(self, artifact, destination=None):
        if artifact.name == self.fail_on:
            raise SinkUnavailable(f"refusing {artifact.name}")
        path = Path(destination or 'memory') / artifact.name
        with self._lock:
            self.stored[path] = artifact
        return path

    def discard(self, path):
        with self._lock:
            self.stored.pop(path, None)
            self.discarded.append(path)

    @property
    def names(self):
        return {artifact.name for artifact in self.stored.values()}


@pytest.fixture
def aoi():
    return Region('aoi', AOI_COORDS)


@pytest.fixture
def wide():
    return Region('wide', WIDE_COORDS)


@pytest.fixture
def event_scenes():
    pre = [make_scene(d, **UNBURNED) for d in PRE_DATES]
    post = [make_scene(d, **BURNED) for d in POST_DATES]
    return pre + post


@pytest.fixture
def source(event_scenes):
    return InMemoryRasterSource(event_scenes)


@pytest.fixture
def config(wide, aoi):
    return AnalysisConfig(
        event_date='2025-01-10',
        regional=Region('MainBoundary', WIDE_COORDS),
        urban=Region('UrbanBoundary', AOI_COORDS),
        export=ExportSettings(scale=0.01),
    )


@pytest.fixture
def memory_sink():
    return MemorySink()
