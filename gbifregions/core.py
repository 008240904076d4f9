"""
Core Pipeline Orchestration for GBIFRegions

This module runs the two stages of the workflow from configuration to files
on disk:

1. Cleaning: read the occurrence table and the region polygons, clean the
   coordinates, write ``cleaned_occurrences.tsv``
2. Aggregation: count cleaned occurrences per region, write
   ``region_summary.tsv`` and ``regions_with_counts.gpkg``

``run_pipeline`` runs both and adds figures, the HTML report and a record of
the run parameters. Every output path is derived from ``cfg.output_dir``.

Failure behaviour:
- Outputs from an earlier run are replaced. With ``overwrite_existing``
  turned off, a run refuses to start if any of its outputs exists
- All results are computed before the first file is written. The data
  outputs of a stage are staged together and only moved into place once
  every one of them has been written, so a failed run leaves prior outputs
  untouched. Figures and the HTML report are written afterwards and their
  failures are not fatal
- Concurrent runs writing to the same directory are last-writer-wins

Example Usage:
    >>> from gbifregions.config import get_default_config
    >>> from gbifregions.core import run_pipeline
    >>> cfg = get_default_config().update(
    ...     cleaning__occurrence_path="occurrences.tsv",
    ...     regions__regions_path="regions.gpkg",
    ...     output_dir="results",
    ... )
    >>> results = run_pipeline(cfg)
    >>> results['summary'].head()
"""

from typing import Dict, Iterable, List, Optional, Any
from pathlib import Path
import json
import logging
import time

import geopandas as gpd

from . import __version__
from . import utils, config, occurrences, regions as regions_mod, cleaning, aggregation, visualization, reports

logger = logging.getLogger(__name__)

OUTPUT_FILES = {
    'cleaned': 'cleaned_occurrences.tsv',
    'summary': 'region_summary.tsv',
    'regions': 'regions_with_counts.gpkg',
    'report': reports.REPORT_FILENAME,
    'parameters': 'pipeline_parameters.json',
}
PLOTS_DIR = 'plots'


def get_output_paths(cfg: config.PipelineConfig) -> Dict[str, Path]:
    """Output file paths for a run, keyed like ``OUTPUT_FILES`` plus 'plots'."""
    base = Path(cfg.output_dir)
    paths = {key: base / name for key, name in OUTPUT_FILES.items()}
    paths['plots'] = base / PLOTS_DIR
    return paths


def check_existing_outputs(paths: Iterable[Path], overwrite: bool) -> None:
    """
    Refuse to run if an output already exists and overwriting is off.

    Raises
    ------
    FileExistsError
        Listing every output that would be replaced
    """
    if overwrite:
        return
    existing = [str(p) for p in paths if Path(p).exists()]
    if existing:
        raise FileExistsError(
            f"Output files already exist: {existing}. "
            "Run without --no-overwrite (overwrite_existing: true) to replace them."
        )


def _load_regions(cfg: config.PipelineConfig) -> gpd.GeoDataFrame:
    if cfg.regions.regions_path is None:
        raise ValueError("No region polygon file configured (regions.regions_path)")
    return regions_mod.load_regions(
        cfg.regions.regions_path,
        id_col=cfg.regions.id_col,
        name_col=cfg.regions.name_col,
        layer=cfg.regions.layer,
    )


def run_cleaning(
    cfg: config.PipelineConfig,
    regions: Optional[gpd.GeoDataFrame] = None,
    write: bool = True,
) -> cleaning.CleaningResult:
    """
    Run the cleaning stage.

    Parameters
    ----------
    cfg : PipelineConfig
        Run configuration; ``cleaning.occurrence_path`` and
        ``regions.regions_path`` must be set
    regions : gpd.GeoDataFrame, optional
        Pre-loaded region set (loaded from the configuration if None)
    write : bool
        Write ``cleaned_occurrences.tsv`` (default: True)

    Returns
    -------
    CleaningResult
    """
    paths = get_output_paths(cfg)
    if write:
        check_existing_outputs([paths['cleaned']], cfg.overwrite_existing)

    if cfg.cleaning.occurrence_path is None:
        raise ValueError("No occurrence table configured (cleaning.occurrence_path)")

    if regions is None:
        regions = _load_regions(cfg)

    df = occurrences.read_occurrences(
        cfg.cleaning.occurrence_path,
        species_col=cfg.cleaning.species_col,
        lon_col=cfg.cleaning.lon_col,
        lat_col=cfg.cleaning.lat_col,
        sep=cfg.cleaning.sep,
    )

    result = cleaning.clean_occurrences(df, regions, cfg.cleaning)

    if write:
        utils.write_table(result.points, paths['cleaned'])
        logger.info(f"  ✓ Wrote {result.stats.n_output} cleaned records to {paths['cleaned']}")

    return result


def run_aggregation(
    cfg: config.PipelineConfig,
    points: Optional[gpd.GeoDataFrame] = None,
    regions: Optional[gpd.GeoDataFrame] = None,
    write: bool = True,
) -> aggregation.AggregationResult:
    """
    Run the aggregation stage.

    Parameters
    ----------
    cfg : PipelineConfig
        Run configuration
    points : gpd.GeoDataFrame, optional
        Cleaned points. If None, ``cleaned_occurrences.tsv`` in the output
        directory is read back
    regions : gpd.GeoDataFrame, optional
        Pre-loaded region set (loaded from the configuration if None)
    write : bool
        Write ``region_summary.tsv`` and ``regions_with_counts.gpkg``
        (default: True)

    Returns
    -------
    AggregationResult
    """
    paths = get_output_paths(cfg)
    if write:
        check_existing_outputs([paths['summary'], paths['regions']], cfg.overwrite_existing)

    if regions is None:
        regions = _load_regions(cfg)

    if points is None:
        points = occurrences.read_cleaned_points(
            paths['cleaned'],
            crs=regions.crs,
            x_col=cfg.aggregation.x_col,
            y_col=cfg.aggregation.y_col,
        )

    result = aggregation.aggregate_by_region(points, regions, cfg)

    if write:
        with utils.StagedOutputs(cfg.output_dir) as staged:
            _write_aggregation_outputs(result, regions, paths, staged)
        _log_aggregation_outputs(result, paths)

    return result


def _write_aggregation_outputs(
    result: aggregation.AggregationResult,
    regions: gpd.GeoDataFrame,
    paths: Dict[str, Path],
    staged: utils.StagedOutputs,
) -> gpd.GeoDataFrame:
    utils.write_table(result.summary, staged.path_for(paths['summary']))
    enriched = aggregation.enrich_regions(regions, result.summary)
    utils.write_vector(enriched, staged.path_for(paths['regions']))
    return enriched


def _log_aggregation_outputs(result: aggregation.AggregationResult, paths: Dict[str, Path]) -> None:
    logger.info(f"  ✓ Wrote summary for {len(result.summary)} regions to {paths['summary']}")
    logger.info(f"  ✓ Wrote region polygons with counts to {paths['regions']}")


def _make_plots(
    cfg: config.PipelineConfig,
    regions: gpd.GeoDataFrame,
    cleaned: cleaning.CleaningResult,
    enriched: gpd.GeoDataFrame,
    summary,
    plots_dir: Path,
) -> List[Path]:
    """Draw every figure in each configured format; failures are non-fatal."""
    vis = cfg.visualization
    written = []

    figures = {
        'cleaning_map': lambda out: visualization.plot_cleaning_map(
            regions, cleaned.points, out,
            lon_col=cfg.cleaning.lon_col, lat_col=cfg.cleaning.lat_col,
            source_crs=cfg.cleaning.source_crs,
            figsize=vis.map_figsize, dpi=vis.figure_dpi,
        ),
        'choropleth_n_occurrences': lambda out: visualization.plot_region_choropleth(
            enriched, out, column=aggregation.N_OCCURRENCES_COL,
            cmap=vis.cmap, figsize=vis.map_figsize, dpi=vis.figure_dpi,
        ),
        'choropleth_n_species': lambda out: visualization.plot_region_choropleth(
            enriched, out, column=aggregation.N_SPECIES_COL,
            cmap=vis.cmap, figsize=vis.map_figsize, dpi=vis.figure_dpi,
        ),
        'region_counts': lambda out: visualization.plot_region_counts(
            summary, out, figsize=vis.barplot_figsize, dpi=vis.figure_dpi,
        ),
    }

    for name, draw in figures.items():
        for fmt in vis.figure_format:
            out = plots_dir / f"{name}.{fmt}"
            try:
                draw(out)
                written.append(out)
            except Exception as e:
                logger.warning(f"  ⚠ Failed to draw {out.name}: {e}")

    logger.info(f"  ✓ Generated {len(written)} figures in {plots_dir}")
    return written


def run_pipeline(cfg: config.PipelineConfig) -> Dict[str, Any]:
    """
    Run cleaning and aggregation, then write every output.

    Parameters
    ----------
    cfg : PipelineConfig
        Run configuration

    Returns
    -------
    Dict[str, Any]
        - 'cleaning': CleaningResult
        - 'aggregation': AggregationResult
        - 'summary': region summary DataFrame
        - 'files': Dict[str, Path] of written outputs
        - 'elapsed': str

    Raises
    ------
    FileExistsError
        If outputs exist and ``overwrite_existing`` is False
    FileNotFoundError
        If an input file is missing
    OccurrenceDataError, RegionDataError
        If an input cannot be used
    """
    start = time.time()
    paths = get_output_paths(cfg)

    planned = [paths['cleaned'], paths['summary'], paths['regions'], paths['parameters']]
    if cfg.make_report:
        planned.append(paths['report'])
    check_existing_outputs(planned, cfg.overwrite_existing)

    logger.info("=" * 80)
    logger.info("GBIFRegions Pipeline")
    logger.info("=" * 80)
    logger.info(f"Occurrences: {cfg.cleaning.occurrence_path}")
    logger.info(f"Regions: {cfg.regions.regions_path}")
    logger.info(f"Output: {cfg.output_dir}")
    logger.info(f"Bounding box: {cfg.cleaning.bbox}")
    logger.info(f"Outlier policy: {cfg.cleaning.outlier_policy}")
    logger.info("")

    for warning in config.validate_config(cfg):
        logger.warning(f"  ⚠ {warning}")

    # ========================================================================
    # PHASE 1: Coordinate Cleaning
    # ========================================================================
    logger.info("PHASE 1: Coordinate Cleaning")
    logger.info("-" * 80)

    logger.info("1.1: Loading region polygons...")
    regions = _load_regions(cfg)
    logger.info(f"  ✓ Loaded {len(regions)} regions")

    logger.info("1.2: Cleaning occurrence coordinates...")
    cleaned = run_cleaning(cfg, regions=regions, write=False)
    logger.info(f"  ✓ {cleaned.stats.n_output}/{cleaned.stats.n_input} records retained")

    # ========================================================================
    # PHASE 2: Regional Aggregation
    # ========================================================================
    logger.info("")
    logger.info("PHASE 2: Regional Aggregation")
    logger.info("-" * 80)

    aggregated = run_aggregation(cfg, points=cleaned.points, regions=regions, write=False)
    logger.info(
        f"  ✓ {aggregated.n_matched} points assigned to regions, "
        f"{aggregated.n_unmatched} unmatched"
    )
    if aggregated.n_unmatched:
        logger.warning(f"  ⚠ {aggregated.n_unmatched} cleaned points fall outside every region")

    # ========================================================================
    # PHASE 3: Outputs
    # ========================================================================
    logger.info("")
    logger.info("PHASE 3: Writing Outputs")
    logger.info("-" * 80)

    files = {}
    parameters = cfg.to_serializable()
    record = {
        'version': __version__,
        'timestamp': utils.get_timestamp(),
        'parameters': parameters,
        'cleaning_stats': cleaned.stats.to_dict(),
        'n_matched': aggregated.n_matched,
        'n_unmatched': aggregated.n_unmatched,
    }

    # Data outputs replace the previous run's files together or not at all
    with utils.StagedOutputs(cfg.output_dir) as staged:
        utils.write_table(cleaned.points, staged.path_for(paths['cleaned']))
        enriched = _write_aggregation_outputs(aggregated, regions, paths, staged)
        utils.write_text(json.dumps(record, indent=2), staged.path_for(paths['parameters']))

    for key in ('cleaned', 'summary', 'regions', 'parameters'):
        files[key] = paths[key]
    logger.info(f"  ✓ Wrote {cleaned.stats.n_output} cleaned records to {paths['cleaned']}")
    _log_aggregation_outputs(aggregated, paths)
    logger.info(f"  ✓ Saved pipeline parameters to {paths['parameters']}")

    plot_paths = []
    if cfg.make_plots:
        plot_paths = _make_plots(
            cfg, regions, cleaned, enriched, aggregated.summary, paths['plots']
        )
        files['plots'] = plot_paths

    if cfg.make_report:
        report = reports.generate_html_report(
            output_dir=cfg.output_dir,
            cleaning_stats=cleaned.stats,
            summary=aggregated.summary,
            parameters=parameters,
            plot_paths=plot_paths,
            version=__version__,
        )
        if report is not None:
            files['report'] = report
        else:
            logger.warning("  ⚠ HTML report was not generated")

    elapsed = utils.format_elapsed_time(time.time() - start)

    logger.info("")
    logger.info("=" * 80)
    logger.info("✓ Pipeline completed successfully")
    logger.info(f"  Records: {cleaned.stats.n_output} cleaned / {cleaned.stats.n_input} input")
    logger.info(f"  Regions: {len(aggregated.summary)}")
    logger.info(f"  Elapsed: {elapsed}")
    logger.info(f"  Output: {cfg.output_dir}")
    logger.info("=" * 80)

    return {
        'cleaning': cleaned,
        'aggregation': aggregated,
        'summary': aggregated.summary,
        'files': files,
        'elapsed': elapsed,
    }
