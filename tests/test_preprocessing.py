import numpy as np
import pytest
import xarray as xr

from burn_severity.config import TimeWindow
from burn_severity.data_loader import InMemoryRasterSource
from burn_severity.errors import ConfigError, EmptyComposite, SourceUnavailable
from burn_severity.indices import compute_nbr
from burn_severity.preprocessing import (
    apply_cloud_mask,
    create_window_composite,
    empty_composite,
    is_empty_composite,
)

from conftest import make_scene

WINDOW = TimeWindow('2024-12-31', '2025-01-09')


def test_median_composite_and_burn_index(wide):
    source = InMemoryRasterSource([
        make_scene('2025-01-02', nir=0.5, swir2=0.1),
        make_scene('2025-01-05', nir=0.3, swir2=0.1),
    ])
    composite = create_window_composite(source, WINDOW, wide, 20)

    assert float(composite['nir'][0, 0]) == pytest.approx(0.4, abs=1e-6)
    assert float(composite['swir2'][0, 0]) == pytest.approx(0.1, abs=1e-6)
    assert float(compute_nbr(composite)[0, 0]) == pytest.approx(0.6, abs=1e-5)


def test_composite_is_deterministic(source, wide):
    first = create_window_composite(source, WINDOW, wide, 20)
    second = create_window_composite(source, WINDOW, wide, 20)
    xr.testing.assert_identical(first, second)


def test_composite_drops_scene_identity(source, wide):
    composite = create_window_composite(source, WINDOW, wide, 20)
    assert 'time' not in composite.dims
    assert 'time' not in composite.coords
    assert composite.attrs['n_observations'] == 3
    assert composite.attrs['method'] == 'median'
    assert composite.attrs['window_start'] == '2024-12-31T00:00:00'
    for band in composite.data_vars:
        assert composite[band].dtype == np.float32


def test_composite_keeps_crs(source, wide):
    composite = create_window_composite(source, WINDOW, wide, 20)
    assert composite.rio.crs.to_epsg() == 4326


def test_composite_ignores_scenes_at_cloud_ceiling(wide):
    source = InMemoryRasterSource([
        make_scene('2025-01-02', cloud_cover=5, nir=1000.0),
        make_scene('2025-01-03', cloud_cover=20, nir=9000.0),
    ])
    composite = create_window_composite(source, WINDOW, wide, 20)
    assert composite.attrs['n_observations'] == 1
    assert float(composite['nir'][0, 0]) == 1000.0


def test_no_matching_scenes_raises_empty_composite(wide):
    source = InMemoryRasterSource([make_scene('2025-01-12')])
    with pytest.raises(EmptyComposite) as excinfo:
        create_window_composite(source, WINDOW, wide, 20)
    assert excinfo.value.window == WINDOW
    assert excinfo.value.cloud_ceiling == 20


def test_empty_composite_marker(wide):
    source = InMemoryRasterSource([])
    composite = create_window_composite(source, WINDOW, wide, 20, allow_empty=True)
    assert is_empty_composite(composite)
    assert composite.attrs['n_observations'] == 0
    assert len(composite.data_vars) == 0


def test_index_on_empty_composite_propagates(wide):
    with pytest.raises(EmptyComposite):
        compute_nbr(empty_composite(WINDOW, wide, 20))


def test_source_errors_are_not_retried(wide):
    class FailingSource:
        calls = 0

        def query(self, window, region, cloud_ceiling):
            FailingSource.calls += 1
            raise SourceUnavailable('catalog down')

    with pytest.raises(SourceUnavailable):
        create_window_composite(FailingSource(), WINDOW, wide, 20)
    assert FailingSource.calls == 1


def test_cloud_ceiling_validated(source, wide):
    with pytest.raises(ConfigError):
        create_window_composite(source, WINDOW, wide, 100)


def test_unknown_method(source, wide):
    with pytest.raises(ValueError):
        create_window_composite(source, WINDOW, wide, 20, method='mode')


def test_mean_and_max_methods(wide):
    source = InMemoryRasterSource([
        make_scene('2025-01-02', nir=1.0),
        make_scene('2025-01-03', nir=2.0),
        make_scene('2025-01-04', nir=6.0),
    ])
    assert float(create_window_composite(source, WINDOW, wide, 20, method='mean')['nir'][0, 0]) == 3.0
    assert float(create_window_composite(source, WINDOW, wide, 20, method='max')['nir'][0, 0]) == 6.0


def test_scl_cloud_pixels_are_masked(wide):
    cloudy = make_scene('2025-01-02', nir=9000.0, scl=4.0)
    cloudy.data['scl'][0, 0] = 9  # cloud high probability
    clear = make_scene('2025-01-03', nir=1000.0, scl=4.0)
    other = make_scene('2025-01-04', nir=3000.0, scl=4.0)
    composite = create_window_composite(InMemoryRasterSource([cloudy, clear, other]), WINDOW, wide, 20)

    assert 'scl' not in composite
    assert float(composite['nir'][0, 0]) == 2000.0  # median of the two clear pixels
    assert float(composite['nir'][0, 1]) == 3000.0


def test_apply_cloud_mask_without_scl_is_noop():
    ds = make_scene('2025-01-02').data
    assert apply_cloud_mask(ds) is ds
