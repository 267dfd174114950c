"""
Exception types raised by the change-detection pipeline.

Per-pixel division singularities are not represented here: those pixels
become no-data and never raise.
"""


class BurnSeverityError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(BurnSeverityError, ValueError):
    """Invalid region, time window, cloud ceiling or configuration file."""


class EmptyComposite(BurnSeverityError):
    """No scene matched the window / region / cloud ceiling of a query."""

    def __init__(self, window=None, region=None, cloud_ceiling=None, message=None):
        self.window = window
        self.region = region
        self.cloud_ceiling = cloud_ceiling
        if message is None:
            message = (
                f"No scenes for window {window} over region "
                f"'{getattr(region, 'name', region)}' with cloud cover < {cloud_ceiling}%; "
                "widen the window or relax the cloud ceiling"
            )
        super().__init__(message)


class GridMismatch(BurnSeverityError):
    """Rasters meant for pixel-aligned arithmetic do not share a grid."""


class SourceUnavailable(BurnSeverityError):
    """The raster source failed to answer a query."""


class SinkUnavailable(BurnSeverityError):
    """The artifact sink failed to persist an artifact."""


class ExportLimitExceeded(BurnSeverityError):
    """A raster artifact exceeds the configured maximum pixel count."""


class RunFailed(BurnSeverityError):
    """A pipeline run aborted; records which stage failed and why."""

    def __init__(self, run: str, stage: str, cause: BaseException):
        self.run = run
        self.stage = stage
        self.cause = cause
        super().__init__(f"Run '{run}' failed at stage '{stage}': {type(cause).__name__}: {cause}")
