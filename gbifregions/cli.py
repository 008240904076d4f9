#!/usr/bin/env python3
"""
GBIFRegions Command-Line Interface

Clean GBIF occurrence coordinates against a region polygon set and count
occurrences and species per region.

Subcommands:
  clean        Clean coordinates, write cleaned_occurrences.tsv
  aggregate    Count cleaned occurrences per region
  run          Both stages plus figures and the HTML report
  init-config  Write a configuration template
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__
from . import utils, config, core

logger = logging.getLogger(__name__)

LOG_FILENAME = "gbifregions.log"


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-c', '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file (command-line options override it)'
    )
    parser.add_argument(
        '--regions',
        type=Path,
        default=None,
        help='Region polygon file (GeoPackage, shapefile, GeoJSON, ...)'
    )
    parser.add_argument(
        '--id-col',
        type=str,
        default=None,
        help='Region identifier column (default: auto-detected)'
    )
    parser.add_argument(
        '--name-col',
        type=str,
        default=None,
        help='Region name column (default: auto-detected)'
    )
    parser.add_argument(
        '-o', '--output', '--output-dir',
        dest='output',
        type=Path,
        default=None,
        help='Output directory (default: results)'
    )
    parser.add_argument(
        '--no-overwrite',
        dest='no_overwrite',
        action='store_true',
        help='Refuse to run if output files from an earlier run exist'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging verbosity (default: INFO)'
    )


def _add_cleaning_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--occurrences',
        type=Path,
        default=None,
        help='Occurrence table (GBIF simple download or any delimited file)'
    )
    parser.add_argument(
        '--bbox',
        type=float,
        nargs=4,
        metavar=('MIN_LON', 'MIN_LAT', 'MAX_LON', 'MAX_LAT'),
        default=None,
        help='Crop extent in the occurrence CRS; points on the edge are kept'
    )
    parser.add_argument(
        '--policy',
        choices=list(config.OUTLIER_POLICIES),
        default=None,
        help='Handling of points outside the regions: snap to the nearest '
             'boundary location (default), mark them, or drop them'
    )
    parser.add_argument(
        '--snap-mode',
        choices=list(config.SNAP_MODES),
        default=None,
        help='Snap to the nearest point on the boundary (edge, default) '
             'or to the nearest boundary vertex'
    )
    parser.add_argument(
        '--species-col',
        type=str,
        default=None,
        help='Species column (default: species)'
    )
    parser.add_argument(
        '--dedupe-per-species',
        action='store_true',
        default=None,
        help='Deduplicate on (species, lon, lat) instead of (lon, lat)'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gbifregions',
        description='GBIFRegions: clean GBIF occurrence coordinates and summarize them by region',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Clean and count in one go
  gbifregions run --occurrences 0012345-240101.csv --regions provinces.gpkg \\
      --bbox -10 35 5 44 --output results/

  # Only flag points outside the regions instead of moving them
  gbifregions clean --occurrences occ.tsv --regions regions.gpkg --policy mark

  # Count a previously cleaned table
  gbifregions aggregate --regions regions.gpkg --output results/

  # Start from a configuration file
  gbifregions init-config my_run.yaml
  gbifregions run --config my_run.yaml
        """
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'GBIFRegions {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    clean = subparsers.add_parser('clean', help='Clean occurrence coordinates')
    _add_common_arguments(clean)
    _add_cleaning_arguments(clean)

    aggregate = subparsers.add_parser('aggregate', help='Count cleaned occurrences per region')
    _add_common_arguments(aggregate)
    aggregate.add_argument(
        '--species-col',
        type=str,
        default=None,
        help='Species column (default: species)'
    )

    run = subparsers.add_parser('run', help='Clean, count, plot and report')
    _add_common_arguments(run)
    _add_cleaning_arguments(run)
    run.add_argument('--no-plots', action='store_true', help='Skip figure generation')
    run.add_argument('--no-report', action='store_true', help='Skip the HTML report')

    init = subparsers.add_parser('init-config', help='Write a configuration template')
    init.add_argument('path', type=Path, help='Output file (.yaml, .yml or .json)')

    return parser


def build_config(args: argparse.Namespace) -> config.PipelineConfig:
    """
    Assemble the run configuration.

    Precedence: command-line options, then GBIFREGIONS_* environment
    variables, then the configuration file, then defaults.
    """
    if args.config is not None:
        cfg = config.load_config_from_file(args.config)
    else:
        cfg = config.get_default_config()

    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)

    option_map = {
        'occurrences': 'cleaning__occurrence_path',
        'bbox': 'cleaning__bbox',
        'policy': 'cleaning__outlier_policy',
        'snap_mode': 'cleaning__snap_mode',
        'dedupe_per_species': 'cleaning__dedupe_per_species',
        'regions': 'regions__regions_path',
        'id_col': 'regions__id_col',
        'name_col': 'regions__name_col',
        'output': 'output_dir',
        'log_level': 'log_level',
    }
    updates = {}
    for option, key in option_map.items():
        value = getattr(args, option, None)
        if value is not None:
            updates[key] = tuple(value) if option == 'bbox' else value

    if getattr(args, 'species_col', None) is not None:
        if args.command == 'aggregate':
            updates['aggregation__species_col'] = args.species_col
        else:
            updates['cleaning__species_col'] = args.species_col
    if args.no_overwrite:
        updates['overwrite_existing'] = False
    if getattr(args, 'no_plots', False):
        updates['make_plots'] = False
    if getattr(args, 'no_report', False):
        updates['make_report'] = False

    return cfg.update(**updates) if updates else cfg


def _init_config(path: Path) -> int:
    suffix = path.suffix.lower()
    fmt = 'json' if suffix == '.json' else 'yaml'
    if suffix not in ('.json', '.yaml', '.yml'):
        print(f"Error: configuration file must end in .yaml, .yml or .json: {path}", file=sys.stderr)
        return 1
    if path.exists():
        print(f"Error: {path} already exists", file=sys.stderr)
        return 1
    config.create_config_template(path, format=fmt)
    print(f"Wrote configuration template: {path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'init-config':
        return _init_config(args.path)

    try:
        cfg = build_config(args)
    except (ValueError, TypeError, FileNotFoundError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1

    output_dir = Path(cfg.output_dir).resolve()
    log_file = output_dir / LOG_FILENAME
    utils.setup_logging(log_level=cfg.log_level, log_file=str(log_file))

    logger.info(f"GBIFRegions {__version__}: {args.command}")

    try:
        if args.command == 'clean':
            result = core.run_cleaning(cfg)
            logger.info(f"✓ Cleaning complete: {result.stats.n_output} records")
        elif args.command == 'aggregate':
            result = core.run_aggregation(cfg)
            logger.info(
                f"✓ Aggregation complete: {len(result.summary)} regions, "
                f"{result.n_matched} points matched"
            )
        else:
            core.run_pipeline(cfg)
        return 0

    except KeyboardInterrupt:
        print("\n\nRun interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(f"{args.command} failed with error: {e}", exc_info=True)
        print(f"\nError: {args.command} failed. Check log file: {log_file}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
