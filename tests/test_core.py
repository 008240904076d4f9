"""
Integration tests for core pipeline orchestration.

Tests cover:
- Full pipeline run from files to outputs
- Separate cleaning and aggregation stages (aggregation reads the cleaned
  table back from disk)
- Reruns replace earlier outputs; optional overwrite protection
- Failed runs leave no outputs behind and keep earlier outputs intact
- Repeated runs produce identical tables
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import matplotlib
matplotlib.use("Agg")

import pandas as pd
import geopandas as gpd
from shapely.geometry import box

from gbifregions import core
from gbifregions.config import get_default_config
from gbifregions.occurrences import OccurrenceDataError


def _write_inputs(directory: Path):
    """Write a five-region GeoPackage and a small occurrence table."""
    regions = gpd.GeoDataFrame(
        {
            'region_id': ['R1', 'R2', 'R3', 'R4', 'R5'],
            'region_name': ['Alpha', 'Bravo', 'Charlie', 'Delta', 'Echo'],
        },
        geometry=[box(2 * i, 0, 2 * i + 2, 2) for i in range(5)],
        crs="EPSG:4326",
    )
    regions_path = directory / "regions.gpkg"
    regions.to_file(regions_path, driver="GPKG")

    occurrences = pd.DataFrame({
        'gbifID': ['1001', '1002', '1003', '1004', '1005', '1006'],
        'species': ['Quercus ilex', 'Quercus ilex', 'Pinus pinea',
                    'Pinus pinea', 'Olea europaea', 'Quercus suber'],
        'decimalLongitude': [1.0, 3.0, 3.5, 3.0, 11.0, None],
        'decimalLatitude': [1.0, 1.0, 0.5, 1.0, 1.0, 1.0],
    })
    occurrences_path = directory / "occurrences.tsv"
    occurrences.to_csv(occurrences_path, sep='\t', index=False)

    return occurrences_path, regions_path


class TestPipelineBase(unittest.TestCase):
    """Temporary directory with input files and a matching configuration."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.occurrences_path, self.regions_path = _write_inputs(self.temp_dir)
        self.output_dir = self.temp_dir / "results"
        self.cfg = get_default_config().update(
            cleaning__occurrence_path=self.occurrences_path,
            regions__regions_path=self.regions_path,
            output_dir=self.output_dir,
            make_plots=False,
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestRunPipeline(TestPipelineBase):
    """Tests for run_pipeline."""

    def test_outputs_written(self):
        results = core.run_pipeline(self.cfg)

        for name in core.OUTPUT_FILES.values():
            self.assertTrue((self.output_dir / name).exists(), name)

        summary = pd.read_csv(self.output_dir / "region_summary.tsv", sep='\t')
        self.assertEqual(summary['region_id'].tolist(), ['R1', 'R2', 'R3', 'R4', 'R5'])
        self.assertEqual(summary['n_occurrences'].tolist(), [1, 2, 0, 0, 1])
        self.assertEqual(summary['n_species'].tolist(), [1, 2, 0, 0, 1])
        self.assertEqual(results['summary']['n_occurrences'].tolist(), [1, 2, 0, 0, 1])

    def test_cleaned_table(self):
        core.run_pipeline(self.cfg)
        cleaned = pd.read_csv(
            self.output_dir / "cleaned_occurrences.tsv", sep='\t', dtype={'gbifID': str}
        )
        self.assertEqual(cleaned['gbifID'].tolist(), ['1001', '1002', '1003', '1005'])
        self.assertEqual(
            cleaned['location_type'].tolist(), ['inside', 'inside', 'inside', 'snapped']
        )
        self.assertNotIn('geometry', cleaned.columns)
        self.assertAlmostEqual(cleaned['X'].iloc[3], 10.0)

    def test_regions_with_counts(self):
        core.run_pipeline(self.cfg)
        enriched = gpd.read_file(self.output_dir / "regions_with_counts.gpkg")
        self.assertEqual(enriched['n_occurrences'].tolist(), [1, 2, 0, 0, 1])
        self.assertEqual(enriched.crs.to_epsg(), 4326)

    def test_parameters_record(self):
        core.run_pipeline(self.cfg)
        record = json.loads((self.output_dir / "pipeline_parameters.json").read_text())
        self.assertEqual(record['cleaning_stats']['n_output'], 4)
        self.assertEqual(record['cleaning_stats']['n_snapped'], 1)
        self.assertEqual(record['n_matched'], 4)
        self.assertEqual(record['parameters']['cleaning']['outlier_policy'], 'snap')

    def test_report_lists_regions(self):
        core.run_pipeline(self.cfg)
        html = (self.output_dir / "summary_report.html").read_text(encoding='utf-8')
        self.assertIn("Echo", html)
        self.assertIn("Coordinate Cleaning", html)

    def test_plots(self):
        cfg = self.cfg.update(make_plots=True, visualization__figure_dpi=72)
        results = core.run_pipeline(cfg)
        plots = results['files']['plots']
        self.assertEqual(len(plots), 4)
        for path in plots:
            self.assertTrue(path.exists(), path)

    def test_rerun_replaces_outputs(self):
        core.run_pipeline(self.cfg)
        core.run_pipeline(self.cfg.update(cleaning__outlier_policy='drop'))

        summary = pd.read_csv(self.output_dir / "region_summary.tsv", sep='\t')
        self.assertEqual(summary['n_occurrences'].tolist(), [1, 2, 0, 0, 0])

    def test_existing_outputs_protected_when_overwrite_off(self):
        core.run_pipeline(self.cfg)
        with self.assertRaises(FileExistsError):
            core.run_pipeline(self.cfg.update(overwrite_existing=False))

    def test_failed_write_keeps_previous_outputs(self):
        core.run_pipeline(self.cfg)
        before = {
            name: (self.output_dir / name).read_bytes()
            for name in ("cleaned_occurrences.tsv", "region_summary.tsv")
        }

        cfg = self.cfg.update(cleaning__outlier_policy='drop')
        with patch('gbifregions.utils.write_vector', side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                core.run_pipeline(cfg)

        for name, content in before.items():
            self.assertEqual((self.output_dir / name).read_bytes(), content, name)
        scratch = [p for p in self.output_dir.iterdir() if p.name.startswith('.tmp_')]
        self.assertEqual(scratch, [])

    def test_failed_run_writes_nothing(self):
        bad = self.temp_dir / "bad.tsv"
        pd.DataFrame({'species': ['a'], 'lon': [1.0]}).to_csv(bad, sep='\t', index=False)
        cfg = self.cfg.update(cleaning__occurrence_path=bad)

        with self.assertRaises(OccurrenceDataError):
            core.run_pipeline(cfg)

        self.assertFalse((self.output_dir / "cleaned_occurrences.tsv").exists())
        self.assertFalse((self.output_dir / "region_summary.tsv").exists())

    def test_missing_region_file(self):
        cfg = self.cfg.update(regions__regions_path=self.temp_dir / "missing.gpkg")
        with self.assertRaises(FileNotFoundError):
            core.run_pipeline(cfg)

    def test_repeated_runs_identical(self):
        core.run_pipeline(self.cfg)
        other_dir = self.temp_dir / "results_again"
        core.run_pipeline(self.cfg.update(output_dir=other_dir))

        for name in ("cleaned_occurrences.tsv", "region_summary.tsv"):
            self.assertEqual(
                (self.output_dir / name).read_bytes(),
                (other_dir / name).read_bytes(),
                name,
            )


class TestSeparateStages(TestPipelineBase):
    """Tests for run_cleaning and run_aggregation."""

    def test_aggregation_reads_cleaned_table(self):
        cleaned = core.run_cleaning(self.cfg)
        self.assertTrue((self.output_dir / "cleaned_occurrences.tsv").exists())

        aggregated = core.run_aggregation(self.cfg)
        self.assertEqual(aggregated.n_matched, cleaned.stats.n_output)
        self.assertEqual(aggregated.summary['n_occurrences'].tolist(), [1, 2, 0, 0, 1])
        self.assertTrue((self.output_dir / "regions_with_counts.gpkg").exists())

    def test_aggregation_without_cleaned_table(self):
        with self.assertRaises(FileNotFoundError):
            core.run_aggregation(self.cfg)

    def test_no_region_file_configured(self):
        cfg = self.cfg.update(regions__regions_path=None)
        with self.assertRaises(ValueError):
            core.run_cleaning(cfg)

    def test_cleaning_rerun_replaces_output(self):
        core.run_cleaning(self.cfg)
        result = core.run_cleaning(self.cfg.update(cleaning__outlier_policy='drop'))

        cleaned = pd.read_csv(self.output_dir / "cleaned_occurrences.tsv", sep='\t')
        self.assertEqual(len(cleaned), result.stats.n_output)
        self.assertEqual(len(cleaned), 3)

    def test_cleaning_output_protected_when_overwrite_off(self):
        core.run_cleaning(self.cfg)
        with self.assertRaises(FileExistsError):
            core.run_cleaning(self.cfg.update(overwrite_existing=False))


class TestOutputPaths(unittest.TestCase):
    """Tests for output path helpers."""

    def test_paths_under_output_dir(self):
        cfg = get_default_config().update(output_dir="somewhere")
        paths = core.get_output_paths(cfg)
        self.assertEqual(paths['cleaned'], Path("somewhere") / "cleaned_occurrences.tsv")
        self.assertEqual(paths['plots'], Path("somewhere") / "plots")

    def test_check_existing_outputs(self):
        with tempfile.NamedTemporaryFile() as f:
            with self.assertRaises(FileExistsError):
                core.check_existing_outputs([Path(f.name)], overwrite=False)
            core.check_existing_outputs([Path(f.name)], overwrite=True)


if __name__ == '__main__':
    unittest.main()
