"""
Unit tests for gbifregions.utils module

Tests cover:
1. Logging setup
2. Separator inference
3. Atomic table, text and vector writes
4. Staged groups of outputs
5. Formatting helpers
"""

import logging

import pytest
import pandas as pd
import geopandas as gpd
from shapely.geometry import Point, box

from gbifregions.utils import (
    StagedOutputs,
    format_elapsed_time,
    infer_separator,
    setup_logging,
    write_table,
    write_text,
    write_vector,
)


def _scratch_dirs(directory):
    return [p for p in directory.iterdir() if p.name.startswith('.tmp_')]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"
        logger = setup_logging(log_level="DEBUG", log_file=str(log_file))

        assert logger.name == "gbifregions"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in log_file.read_text()

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1


class TestInferSeparator:
    """Tests for infer_separator."""

    @pytest.mark.parametrize("name, expected", [
        ("summary.csv", ','),
        ("SUMMARY.CSV", ','),
        ("occurrence.txt", '\t'),
        ("cleaned.tsv", '\t'),
    ])
    def test_suffixes(self, name, expected):
        assert infer_separator(name) == expected


class TestWriteTable:
    """Tests for write_table."""

    def test_writes_tsv_without_index(self, tmp_path):
        df = pd.DataFrame({'a': [1, 2], 'b': ['x', 'y']})
        path = write_table(df, tmp_path / "out.tsv")
        assert path.read_text() == "a\tb\n1\tx\n2\ty\n"

    def test_geometry_column_dropped(self, tmp_path):
        gdf = gpd.GeoDataFrame({'X': [1.0]}, geometry=[Point(1, 2)], crs="EPSG:4326")
        path = write_table(gdf, tmp_path / "points.csv")
        assert path.read_text().splitlines()[0] == "X"

    def test_creates_parent_directory(self, tmp_path):
        path = write_table(pd.DataFrame({'a': [1]}), tmp_path / "nested" / "dir" / "t.tsv")
        assert path.exists()

    def test_no_scratch_left_behind(self, tmp_path):
        write_table(pd.DataFrame({'a': [1]}), tmp_path / "t.tsv")
        assert _scratch_dirs(tmp_path) == []

    def test_failed_write_keeps_previous_file(self, tmp_path, monkeypatch):
        path = tmp_path / "t.tsv"
        path.write_text("previous\n")

        def broken_to_csv(self, *args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(pd.DataFrame, "to_csv", broken_to_csv)
        with pytest.raises(OSError, match="disk full"):
            write_table(pd.DataFrame({'a': [1]}), path)

        assert path.read_text() == "previous\n"
        assert _scratch_dirs(tmp_path) == []


class TestWriteText:
    """Tests for write_text."""

    def test_utf8(self, tmp_path):
        path = write_text("Cataluña\n", tmp_path / "report.html")
        assert path.read_text(encoding='utf-8') == "Cataluña\n"

    def test_replaces_existing(self, tmp_path):
        path = tmp_path / "params.json"
        path.write_text("old")
        write_text("new", path)
        assert path.read_text() == "new"


class TestWriteVector:
    """Tests for write_vector."""

    def test_geopackage(self, tmp_path):
        gdf = gpd.GeoDataFrame(
            {'region_id': ['A'], 'n_occurrences': [3]},
            geometry=[box(0, 0, 1, 1)],
            crs="EPSG:4326",
        )
        path = write_vector(gdf, tmp_path / "regions.gpkg")
        reread = gpd.read_file(path)
        assert reread['n_occurrences'].tolist() == [3]
        assert reread.crs.to_epsg() == 4326
        assert _scratch_dirs(tmp_path) == []

    def test_unsupported_format(self, tmp_path):
        gdf = gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)], crs="EPSG:4326")
        with pytest.raises(ValueError, match="Unsupported vector output format"):
            write_vector(gdf, tmp_path / "regions.shp")


class TestStagedOutputs:
    """Tests for StagedOutputs."""

    def test_outputs_replaced_together(self, tmp_path):
        (tmp_path / "a.tsv").write_text("old a\n")
        with StagedOutputs(tmp_path) as staged:
            write_table(pd.DataFrame({'a': [1]}), staged.path_for(tmp_path / "a.tsv"))
            write_text("new b", staged.path_for(tmp_path / "b.json"))
            # Nothing is visible until the block completes
            assert (tmp_path / "a.tsv").read_text() == "old a\n"
            assert not (tmp_path / "b.json").exists()

        assert (tmp_path / "a.tsv").read_text() == "a\n1\n"
        assert (tmp_path / "b.json").read_text() == "new b"
        assert _scratch_dirs(tmp_path) == []

    def test_failure_keeps_every_previous_output(self, tmp_path):
        (tmp_path / "a.tsv").write_text("old a\n")
        (tmp_path / "b.json").write_text("old b")

        with pytest.raises(OSError, match="disk full"):
            with StagedOutputs(tmp_path) as staged:
                write_table(pd.DataFrame({'a': [1]}), staged.path_for(tmp_path / "a.tsv"))
                raise OSError("disk full")

        assert (tmp_path / "a.tsv").read_text() == "old a\n"
        assert (tmp_path / "b.json").read_text() == "old b"
        assert _scratch_dirs(tmp_path) == []

    def test_unwritten_output_is_an_error(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="never written"):
            with StagedOutputs(tmp_path) as staged:
                staged.path_for(tmp_path / "a.tsv")
        assert not (tmp_path / "a.tsv").exists()

    def test_creates_output_directory(self, tmp_path):
        out = tmp_path / "nested" / "results"
        with StagedOutputs(out) as staged:
            write_text("x", staged.path_for(out / "x.txt"))
        assert (out / "x.txt").read_text() == "x"


class TestFormatting:
    """Tests for formatting helpers."""

    @pytest.mark.parametrize("seconds, expected", [
        (45, "45s"),
        (90, "1.5m"),
        (3725, "1h 2m"),
    ])
    def test_elapsed_time(self, seconds, expected):
        assert format_elapsed_time(seconds) == expected
