"""
Burn Severity: Bitemporal Wildfire Change Detection
===================================================

Modules:
    config: Regions, time windows and deployment settings
    data_loader: Raster source contract, STAC access and datacube formation
    preprocessing: Cloud masking and temporal compositing
    indices: Normalized-difference indices (NBR, NDVI)
    change: Differencing, burn severity classes and statistics
    clipping: Region masks and clipping
    visualization: Tone-mapping and quicklooks
    export: Artifacts and sinks
    pipeline: Regional and urban run orchestration
"""

from .config import (
    Region,
    TimeWindow,
    AnalysisConfig,
    event_windows,
    load_config,
)

from .errors import (
    BurnSeverityError,
    ConfigError,
    EmptyComposite,
    GridMismatch,
    SourceUnavailable,
    SinkUnavailable,
    ExportLimitExceeded,
    RunFailed,
)

from .data_loader import (
    RasterScene,
    RasterSource,
    InMemoryRasterSource,
    StacRasterSource,
    filter_scenes,
    build_datacube,
)

from .preprocessing import (
    apply_cloud_mask,
    create_window_composite,
    is_empty_composite,
)

from .indices import normalized_difference, compute_nbr, compute_ndvi, compute_index

from .change import (
    difference,
    classify_burn_severity,
    compute_change_statistics,
)

from .clipping import clip, region_mask

from .visualization import VisParams, visualize, plot_change_map

from .export import Artifact, ArtifactSink, LocalArtifactSink

from .pipeline import RunSpec, RunReport, default_runs, run_pipeline, run_all

__version__ = "0.1.0"
