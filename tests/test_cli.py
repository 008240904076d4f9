"""
Tests for the gbifregions command-line interface.
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import matplotlib
matplotlib.use("Agg")

import pandas as pd

from gbifregions import cli
from gbifregions.config import load_config_from_file

from test_core import _write_inputs


class TestCLI(unittest.TestCase):
    """End-to-end CLI runs against small input files."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.occurrences_path, self.regions_path = _write_inputs(self.temp_dir)
        self.output_dir = self.temp_dir / "results"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _base_args(self, command):
        return [
            command,
            '--regions', str(self.regions_path),
            '--output', str(self.output_dir),
        ]

    def test_run(self):
        argv = self._base_args('run') + [
            '--occurrences', str(self.occurrences_path),
            '--no-plots',
        ]
        self.assertEqual(cli.main(argv), 0)
        summary = pd.read_csv(self.output_dir / "region_summary.tsv", sep='\t')
        self.assertEqual(len(summary), 5)
        self.assertTrue((self.output_dir / cli.LOG_FILENAME).exists())

    def test_clean_then_aggregate(self):
        clean = self._base_args('clean') + [
            '--occurrences', str(self.occurrences_path),
            '--policy', 'drop',
        ]
        self.assertEqual(cli.main(clean), 0)
        self.assertEqual(cli.main(self._base_args('aggregate')), 0)

        summary = pd.read_csv(self.output_dir / "region_summary.tsv", sep='\t')
        self.assertEqual(summary['n_occurrences'].tolist(), [1, 2, 0, 0, 0])

    def test_bbox_option(self):
        argv = self._base_args('run') + [
            '--occurrences', str(self.occurrences_path),
            '--bbox', '0', '0', '4', '2',
            '--no-plots', '--no-report',
        ]
        self.assertEqual(cli.main(argv), 0)
        self.assertFalse((self.output_dir / "summary_report.html").exists())

    def test_missing_input_returns_error(self):
        argv = self._base_args('run') + [
            '--occurrences', str(self.temp_dir / "missing.tsv"),
        ]
        self.assertEqual(cli.main(argv), 1)

    def test_rerun_replaces_outputs(self):
        argv = self._base_args('clean') + ['--occurrences', str(self.occurrences_path)]
        self.assertEqual(cli.main(argv), 0)
        self.assertEqual(cli.main(argv + ['--policy', 'drop']), 0)

        cleaned = pd.read_csv(self.output_dir / "cleaned_occurrences.tsv", sep='\t')
        self.assertEqual(len(cleaned), 3)

    def test_no_overwrite_returns_error(self):
        argv = self._base_args('clean') + ['--occurrences', str(self.occurrences_path)]
        self.assertEqual(cli.main(argv), 0)
        self.assertEqual(cli.main(argv + ['--no-overwrite']), 1)

    def test_unknown_environment_setting_returns_error(self):
        argv = self._base_args('run') + ['--occurrences', str(self.occurrences_path)]
        with patch.dict('os.environ', {'GBIFREGIONS_FOO__BAR': '1'}):
            self.assertEqual(cli.main(argv), 1)
        self.assertFalse((self.output_dir / "region_summary.tsv").exists())

    def test_keyboard_interrupt(self):
        argv = self._base_args('run') + ['--occurrences', str(self.occurrences_path)]
        with patch('gbifregions.core.run_pipeline', side_effect=KeyboardInterrupt):
            self.assertEqual(cli.main(argv), 130)

    def test_init_config(self):
        path = self.temp_dir / "my_run.yaml"
        self.assertEqual(cli.main(['init-config', str(path)]), 0)
        self.assertEqual(load_config_from_file(path).cleaning.outlier_policy, 'snap')

        # Refuses to overwrite
        self.assertEqual(cli.main(['init-config', str(path)]), 1)

    def test_init_config_bad_suffix(self):
        self.assertEqual(cli.main(['init-config', str(self.temp_dir / "cfg.ini")]), 1)


class TestBuildConfig(unittest.TestCase):
    """Tests for option precedence."""

    def test_command_line_overrides_file_and_environment(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "cfg.yaml"
            path.write_text(
                "cleaning:\n  outlier_policy: mark\n  snap_mode: vertex\nlog_level: WARNING\n"
            )
            parser = cli.build_parser()
            args = parser.parse_args(['run', '--config', str(path), '--policy', 'drop'])

            with patch.dict('os.environ', {'GBIFREGIONS_LOG_LEVEL': 'DEBUG'}):
                cfg = cli.build_config(args)

        self.assertEqual(cfg.cleaning.outlier_policy, 'drop')
        self.assertEqual(cfg.cleaning.snap_mode, 'vertex')
        self.assertEqual(cfg.log_level, 'DEBUG')

    def test_aggregate_species_column(self):
        args = cli.build_parser().parse_args(['aggregate', '--species-col', 'taxon'])
        cfg = cli.build_config(args)
        self.assertEqual(cfg.aggregation.species_col, 'taxon')
        self.assertEqual(cfg.cleaning.species_col, 'species')


if __name__ == '__main__':
    unittest.main()
