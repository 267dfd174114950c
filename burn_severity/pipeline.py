"""
Pipeline orchestration for the regional and urban runs.

Each run composites the pre/post windows, derives indices and their
differences, clips every product to the run region and only then exports.
Runs share no state and may execute concurrently.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import dask

from .change import CHANGE_NAMES, classify_burn_severity, compute_change_statistics, difference
from .clipping import clip
from .config import (
    BAND_NAMES,
    FALSE_COLOR_URBAN_PARAMS,
    TRUE_COLOR_PARAMS,
    AnalysisConfig,
    Region,
    validate_cloud_ceiling,
)
from .data_loader import RasterSource
from .errors import ConfigError, BurnSeverityError, RunFailed
from .export import Artifact, ArtifactSink
from .indices import INDEX_BANDS, compute_index
from .preprocessing import create_window_composite
from .visualization import VisParams, visualize

LOGGER = logging.getLogger(__name__)

STAGES = ('composite-pre', 'composite-post', 'index', 'change', 'clip', 'classify',
          'visualize', 'export')

CHANGE_ARTIFACTS = {
    'dNBR': 'Burn_Severity_dNBR',
    'dNDVI': 'Vegetation_Loss_dNDVI',
}
CHANGE_DESCRIPTIONS = {
    'dNBR': 'Burn severity (dNBR = NBR pre - NBR post)',
    'dNDVI': 'Vegetation loss (dNDVI = NDVI pre - NDVI post)',
}


@dataclass(frozen=True)
class RunSpec:
    """Parameters of one pipeline run."""

    name: str
    region: Region
    composite_bands: Tuple[str, ...]
    composite_label: str
    composite_vis: Optional[VisParams] = None
    change_indices: Tuple[str, ...] = ()
    severity_classes: bool = False
    boundary_name: Optional[str] = None
    cloud_ceiling: Optional[float] = None

    def __post_init__(self):
        unknown = [b for b in self.composite_bands if b not in BAND_NAMES]
        if unknown:
            raise ConfigError(f"Run '{self.name}': unknown bands {unknown}")
        unknown = [k for k in self.change_indices if k not in INDEX_BANDS]
        if unknown:
            raise ConfigError(f"Run '{self.name}': unknown indices {unknown}")
        if self.severity_classes and 'NBR' not in self.change_indices:
            raise ConfigError(f"Run '{self.name}': severity classes need the NBR index")
        if self.cloud_ceiling is not None:
            validate_cloud_ceiling(self.cloud_ceiling)


@dataclass
class RunReport:
    """Outcome of one run."""

    name: str
    status: str = 'pending'
    failure: Optional[RunFailed] = None
    artifacts: List[Path] = field(default_factory=list)
    outputs: Dict[str, object] = field(default_factory=dict)
    statistics: Dict[str, Dict] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == 'succeeded'

    @property
    def stage(self) -> Optional[str]:
        return self.failure.stage if self.failure else None

    def summary(self) -> str:
        if self.succeeded:
            return f"{self.name}: succeeded ({len(self.artifacts)} artifacts)"
        return f"{self.name}: {self.status} - {self.failure}"


def default_runs(config: AnalysisConfig) -> List[RunSpec]:
    """
    The two reference runs.

    regional: true colour composites, dNBR, dNDVI and severity classes.
    urban: false colour (SWIR2, SWIR1, red) composites; the clipped raster
    is the analytical artifact, the gamma-stretched rendering is a
    secondary export.
    """
    return [
        RunSpec(
            name='regional',
            region=config.regional,
            composite_bands=TRUE_COLOR_PARAMS.bands,
            composite_label='TrueColor',
            change_indices=('NBR', 'NDVI'),
            severity_classes=True,
        ),
        RunSpec(
            name='urban',
            region=config.urban,
            composite_bands=FALSE_COLOR_URBAN_PARAMS.bands,
            composite_label='UrbanDamage_FalseColor',
            composite_vis=FALSE_COLOR_URBAN_PARAMS,
        ),
    ]


def _export(artifacts: Sequence[Artifact], sink: ArtifactSink, destination: str) -> List[Path]:
    """Store all artifacts, or none: stored files are discarded on failure."""
    stored = []
    try:
        for artifact in artifacts:
            stored.append(sink.store(artifact, destination))
    except Exception:
        for path in stored:
            sink.discard(path)
        raise
    return stored


def run_pipeline(
    run: RunSpec,
    source: RasterSource,
    sink: ArtifactSink,
    config: AnalysisConfig,
) -> RunReport:
    """
    Execute one run end to end.

    Parameters
    ----------
    run : RunSpec
        Run parameters
    source : RasterSource
        Scene provider
    sink : ArtifactSink
        Artifact destination
    config : AnalysisConfig
        Shared parameters (event date, windows, cloud ceiling, export)

    Returns
    -------
    RunReport
        Never raises for pipeline failures; a failed report names the stage
        and cause, and nothing from that run is left exported.
    """
    report = RunReport(run.name)
    prefix = config.artifact_prefix
    region = run.region
    ceiling = config.cloud_ceiling if run.cloud_ceiling is None else run.cloud_ceiling
    pre_window, post_window = config.windows()
    bands = list(run.composite_bands)

    stage = STAGES[0]
    try:
        LOGGER.info("Run '%s': pre %s, post %s, region '%s'", run.name, pre_window, post_window, region.name)
        pre = create_window_composite(source, pre_window, region, ceiling)

        stage = 'composite-post'
        post = create_window_composite(source, post_window, region, ceiling)

        stage = 'index'
        index_pairs = {
            kind: (compute_index(pre, kind, source='pre'), compute_index(post, kind, source='post'))
            for kind in run.change_indices
        }

        stage = 'change'
        changes = {
            CHANGE_NAMES[kind]: difference(index_pre, index_post)
            for kind, (index_pre, index_post) in index_pairs.items()
        }

        stage = 'clip'
        label = run.composite_label
        products = [
            (f"{prefix}_PreEvent_{label}", clip(pre[bands], region),
             f"Pre-event {label} composite {pre_window}"),
            (f"{prefix}_PostEvent_{label}", clip(post[bands], region),
             f"Post-event {label} composite {post_window}"),
        ]
        clipped_changes = {name: clip(change, region) for name, change in changes.items()}

        stage = 'classify'
        for change_name, clipped in clipped_changes.items():
            products.append((f"{prefix}_{CHANGE_ARTIFACTS[change_name]}", clipped,
                             CHANGE_DESCRIPTIONS[change_name]))
            report.statistics[change_name] = compute_change_statistics(clipped)
            if change_name == 'dNBR' and run.severity_classes:
                products.append((f"{prefix}_Burn_Severity_Classes", classify_burn_severity(clipped),
                                 "USGS burn severity classes from dNBR"))

        stage = 'visualize'
        renderings = []
        if run.composite_vis is not None:
            for name, raster, description in products[:2]:
                renderings.append((f"{name}_Visualized", visualize(raster, run.composite_vis),
                                   f"{description} (display rendering)"))

        artifacts = [
            Artifact.raster(name, raster, region, description)
            for name, raster, description in products + renderings
        ]
        artifacts.append(Artifact.boundary(f"{prefix}_{run.boundary_name or region.name}", region,
                                           config.export.vector_format))

        stage = 'export'
        report.artifacts = _export(artifacts, sink, config.export.folder)

    except Exception as exc:
        report.status = 'failed'
        report.failure = RunFailed(run.name, stage, exc)
        report.statistics = {}
        if isinstance(exc, BurnSeverityError):
            LOGGER.error("%s", report.failure)
        else:
            LOGGER.exception("%s", report.failure)
        return report

    report.status = 'succeeded'
    report.outputs = {name: raster for name, raster, _ in products}
    LOGGER.info("Run '%s' finished: %d artifacts", run.name, len(report.artifacts))
    return report


def run_all(
    runs: Sequence[RunSpec],
    source: RasterSource,
    sink: ArtifactSink,
    config: AnalysisConfig,
    parallel: Optional[bool] = None,
) -> List[RunReport]:
    """
    Execute independent runs, concurrently or one after another.

    Parameters
    ----------
    runs : sequence of RunSpec
        Runs to execute
    source, sink :
        Shared collaborators; runs never share intermediate rasters
    config : AnalysisConfig
        Shared parameters
    parallel : bool, optional
        Use the dask threaded scheduler. Defaults to ``config.parallel``.

    Returns
    -------
    list of RunReport
        In the order of ``runs``
    """
    if parallel is None:
        parallel = config.parallel

    names = [run.name for run in runs]
    if len(set(names)) != len(names):
        raise ConfigError(f"Run names must be unique: {names}")

    if parallel and len(runs) > 1:
        tasks = [dask.delayed(run_pipeline)(run, source, sink, config) for run in runs]
        reports = list(dask.compute(*tasks, scheduler='threads'))
    else:
        reports = [run_pipeline(run, source, sink, config) for run in runs]

    for report in reports:
        LOGGER.info("%s", report.summary())
    return reports
