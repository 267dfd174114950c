"""
Command-line entry point.

    burn-severity --config configs/la_santa_ana.yaml --output-dir exports/
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import matplotlib.pyplot as plt

from .config import DNBR_PARAMS, DNDVI_PARAMS, load_config
from .data_loader import DEFAULT_CATALOG_URL, StacRasterSource
from .errors import ConfigError
from .export import LocalArtifactSink
from .pipeline import CHANGE_ARTIFACTS, default_runs, run_all
from .visualization import plot_change_map

LOGGER = logging.getLogger(__name__)

QUICKLOOK_PARAMS = {
    'dNBR': DNBR_PARAMS,
    'dNDVI': DNDVI_PARAMS,
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Burn severity and vegetation loss change detection from Sentinel-2'
    )
    parser.add_argument('--config', type=str, default=None,
                        help='YAML config overriding the reference deployment')
    parser.add_argument('--output-dir', type=str, default='exports',
                        help='Root directory for exported artifacts')
    parser.add_argument('--catalog-url', type=str, default=DEFAULT_CATALOG_URL,
                        help='STAC catalog endpoint')
    parser.add_argument('--runs', nargs='+', default=None,
                        help='Subset of runs to execute (regional, urban)')
    parser.add_argument('--sequential', action='store_true',
                        help='Run the pipelines one after another')
    parser.add_argument('--quicklook-dir', type=str, default=None,
                        help='Also save PNG quicklooks of change rasters here')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args(argv)


def save_quicklooks(reports, prefix: str, output_dir: str) -> List[str]:
    """Write a PNG per change raster of every successful run."""
    paths = []
    for report in reports:
        if not report.succeeded:
            continue
        for change_name, artifact_suffix in CHANGE_ARTIFACTS.items():
            name = f"{prefix}_{artifact_suffix}"
            if name not in report.outputs:
                continue
            path = os.path.join(output_dir, f"{name}.png")
            fig = plot_change_map(
                report.outputs[name], QUICKLOOK_PARAMS[change_name],
                title=f"{change_name} ({report.name})", output_path=path,
            )
            plt.close(fig)
            paths.append(path)
    return paths


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        config = load_config(args.config)
        runs = default_runs(config)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 2

    if args.runs:
        unknown = set(args.runs) - {run.name for run in runs}
        if unknown:
            LOGGER.error("Unknown runs: %s", sorted(unknown))
            return 2
        runs = [run for run in runs if run.name in args.runs]

    source = StacRasterSource(catalog_url=args.catalog_url, resolution=config.export.scale)
    sink = LocalArtifactSink.from_settings(args.output_dir, config.export)

    reports = run_all(runs, source, sink, config, parallel=not args.sequential and config.parallel)

    if args.quicklook_dir:
        save_quicklooks(reports, config.artifact_prefix, args.quicklook_dir)

    failed = [r for r in reports if not r.succeeded]
    for report in failed:
        LOGGER.error("Run '%s' failed at stage '%s': %s", report.name, report.stage, report.failure.cause)
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
