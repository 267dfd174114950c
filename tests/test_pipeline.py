from pathlib import Path

import numpy as np
import pytest
import xarray as xr

from burn_severity.config import TRUE_COLOR_PARAMS
from burn_severity.data_loader import InMemoryRasterSource
from burn_severity.errors import ConfigError, EmptyComposite, GridMismatch, SourceUnavailable
from burn_severity.export import LocalArtifactSink
from burn_severity.pipeline import RunSpec, default_runs, run_all, run_pipeline

from conftest import BURNED, POST_DATES, PRE_DATES, UNBURNED, X, MemorySink, make_scene

DNBR = (3000 - 1000) / 4000 - (1500 - 2000) / 3500
DNDVI = (3000 - 400) / 3400 - (1500 - 600) / 2100

REGIONAL_ARTIFACTS = {
    'LA_PreEvent_TrueColor',
    'LA_PostEvent_TrueColor',
    'LA_Burn_Severity_dNBR',
    'LA_Burn_Severity_Classes',
    'LA_Vegetation_Loss_dNDVI',
    'LA_MainBoundary',
}
URBAN_ARTIFACTS = {
    'LA_PreEvent_UrbanDamage_FalseColor',
    'LA_PostEvent_UrbanDamage_FalseColor',
    'LA_PreEvent_UrbanDamage_FalseColor_Visualized',
    'LA_PostEvent_UrbanDamage_FalseColor_Visualized',
    'LA_UrbanBoundary',
}


class RegionFailingSource:
    """Delegates to another source but fails queries for one region."""

    def __init__(self, inner, region_name):
        self.inner = inner
        self.region_name = region_name

    def query(self, window, region, cloud_ceiling):
        if region.name == self.region_name:
            raise SourceUnavailable(f"no coverage for {region.name}")
        return self.inner.query(window, region, cloud_ceiling)


@pytest.fixture
def runs(config):
    return {run.name: run for run in default_runs(config)}


def test_regional_run(runs, source, memory_sink, config):
    report = run_pipeline(runs['regional'], source, memory_sink, config)

    assert report.succeeded, report.summary()
    assert memory_sink.names == REGIONAL_ARTIFACTS
    assert all(path.parent == Path('LA Wildfire') for path in report.artifacts)

    dnbr = report.outputs['LA_Burn_Severity_dNBR']
    np.testing.assert_allclose(dnbr.values, DNBR, rtol=1e-5)
    dndvi = report.outputs['LA_Vegetation_Loss_dNDVI']
    np.testing.assert_allclose(dndvi.values, DNDVI, rtol=1e-5)

    stats = report.statistics['dNBR']
    assert stats['valid_pixels'] == 70
    assert stats['loss_pct'] == 100.0
    assert stats['moderate_high_pct'] == 100.0
    assert report.statistics['dNDVI']['mean'] == pytest.approx(DNDVI, rel=1e-5)


def test_regional_composites_keep_only_true_colour_bands(runs, source, memory_sink, config):
    report = run_pipeline(runs['regional'], source, memory_sink, config)
    pre = report.outputs['LA_PreEvent_TrueColor']
    assert list(pre.data_vars) == list(TRUE_COLOR_PARAMS.bands)
    assert float(pre['red'][0, 0]) == UNBURNED['red']
    assert float(report.outputs['LA_PostEvent_TrueColor']['red'][0, 0]) == BURNED['red']


def test_urban_run(runs, source, memory_sink, config):
    report = run_pipeline(runs['urban'], source, memory_sink, config)

    assert report.succeeded, report.summary()
    assert memory_sink.names == URBAN_ARTIFACTS
    assert report.statistics == {}

    post = report.outputs['LA_PostEvent_UrbanDamage_FalseColor']
    assert int(post['swir2'].notnull().sum()) == 18
    assert float(post['swir2'][2, 2]) == BURNED['swir2']

    rendered = {a.name: a.payload for a in memory_sink.stored.values()}
    vis = rendered['LA_PostEvent_UrbanDamage_FalseColor_Visualized']
    assert vis.dtype == np.uint8
    assert vis.values[:, 0, 0].tolist() == [0, 0, 0]
    assert vis.values[0, 2, 2] == round(255 * (BURNED['swir2'] / 10000) ** (1 / 2.5))


def test_urban_boundary_uses_configured_vector_format(runs, source, memory_sink, config):
    run_pipeline(runs['urban'], source, memory_sink, config)
    boundary = next(a for a in memory_sink.stored.values() if a.kind == 'vector')
    assert boundary.name == 'LA_UrbanBoundary'
    assert boundary.file_format == config.export.vector_format
    assert boundary.payload == config.urban


def test_parallel_and_sequential_runs_agree(runs, source, config):
    sequential_sink, parallel_sink = MemorySink(), MemorySink()
    sequential = run_all(list(runs.values()), source, sequential_sink, config, parallel=False)
    parallel = run_all(list(runs.values()), source, parallel_sink, config, parallel=True)

    assert [r.name for r in parallel] == ['regional', 'urban']
    assert sequential_sink.names == parallel_sink.names == REGIONAL_ARTIFACTS | URBAN_ARTIFACTS
    for seq, par in zip(sequential, parallel):
        assert seq.succeeded and par.succeeded
        assert seq.outputs.keys() == par.outputs.keys()
        for name in seq.outputs:
            xr.testing.assert_identical(seq.outputs[name], par.outputs[name])


def test_failed_run_does_not_affect_the_other(runs, source, memory_sink, config):
    failing = RegionFailingSource(source, 'UrbanBoundary')
    regional, urban = run_all(list(runs.values()), failing, memory_sink, config, parallel=True)

    assert regional.succeeded
    assert not urban.succeeded
    assert urban.stage == 'composite-pre'
    assert isinstance(urban.failure.cause, SourceUnavailable)
    assert urban.artifacts == []
    assert memory_sink.names == REGIONAL_ARTIFACTS


def test_missing_post_event_scenes(runs, memory_sink, config):
    source = InMemoryRasterSource([make_scene(d) for d in PRE_DATES])
    report = run_pipeline(runs['regional'], source, memory_sink, config)

    assert report.status == 'failed'
    assert report.stage == 'composite-post'
    assert isinstance(report.failure.cause, EmptyComposite)
    assert memory_sink.stored == {}


def test_run_cloud_ceiling_override(config, source, memory_sink):
    run = RunSpec('strict', config.urban, ('red',), 'Red', cloud_ceiling=1)
    report = run_pipeline(run, source, memory_sink, config)
    assert report.stage == 'composite-pre'
    assert isinstance(report.failure.cause, EmptyComposite)


def test_export_failure_discards_stored_artifacts(runs, source, config):
    sink = MemorySink(fail_on='LA_MainBoundary')
    report = run_pipeline(runs['regional'], source, sink, config)

    assert report.stage == 'export'
    assert sink.stored == {}
    assert len(sink.discarded) == len(REGIONAL_ARTIFACTS) - 1
    assert report.statistics == {}
    assert 'refusing' in report.summary()


def test_misaligned_composites_fail_at_change(runs, memory_sink, config):
    scenes = [make_scene(d, **UNBURNED) for d in PRE_DATES]
    scenes += [make_scene(d, x=X + 0.005, **BURNED) for d in POST_DATES]
    report = run_pipeline(runs['regional'], InMemoryRasterSource(scenes), memory_sink, config)

    assert report.stage == 'change'
    assert isinstance(report.failure.cause, GridMismatch)
    assert memory_sink.stored == {}


@pytest.mark.parametrize('step', ['classify_burn_severity', 'compute_change_statistics'])
def test_classification_failure_names_its_stage(runs, source, memory_sink, config, monkeypatch, step):
    def broken(raster):
        raise ValueError(f"{step} failed on {raster.name}")

    monkeypatch.setattr(f'burn_severity.pipeline.{step}', broken)
    report = run_pipeline(runs['regional'], source, memory_sink, config)

    assert report.stage == 'classify'
    assert isinstance(report.failure.cause, ValueError)
    assert report.statistics == {}
    assert memory_sink.stored == {}


def test_runs_write_files_locally(runs, source, config, tmp_path):
    sink = LocalArtifactSink.from_settings(tmp_path, config.export)
    reports = run_all(list(runs.values()), source, sink, config, parallel=False)

    assert all(r.succeeded for r in reports)
    folder = tmp_path / 'LA Wildfire'
    written = {p.name for p in folder.iterdir()}
    assert 'LA_Burn_Severity_dNBR.tif' in written
    assert 'LA_Burn_Severity_Classes.tif' in written
    assert 'LA_PreEvent_UrbanDamage_FalseColor_Visualized.tif' in written
    assert 'LA_MainBoundary.geojson' in written
    assert len(written) == len(REGIONAL_ARTIFACTS | URBAN_ARTIFACTS)


def test_default_runs(config):
    regional, urban = default_runs(config)
    assert regional.change_indices == ('NBR', 'NDVI')
    assert regional.severity_classes
    assert urban.change_indices == ()
    assert urban.composite_vis.gamma == 2.5
    assert urban.region == config.urban


@pytest.mark.parametrize('kwargs', [
    dict(composite_bands=('thermal',)),
    dict(change_indices=('EVI',)),
    dict(severity_classes=True),
    dict(cloud_ceiling=120),
])
def test_run_spec_validation(config, kwargs):
    params = dict(name='bad', region=config.urban, composite_bands=('red',), composite_label='Red')
    params.update(kwargs)
    with pytest.raises(ConfigError):
        RunSpec(**params)


def test_run_names_must_be_unique(runs, source, memory_sink, config):
    with pytest.raises(ConfigError):
        run_all([runs['urban'], runs['urban']], source, memory_sink, config)
