"""
Shared fixtures for the GBIFRegions test suite.

All region sets are small synthetic polygons built with shapely, so no
external shapefiles or network downloads are needed.
"""

import matplotlib
matplotlib.use("Agg")

import pytest
import pandas as pd
import geopandas as gpd
from shapely.geometry import box


@pytest.fixture
def five_regions():
    """Five adjacent 2x2 degree squares in a row, R1 (west) to R5 (east)."""
    return gpd.GeoDataFrame(
        {
            'region_id': ['R1', 'R2', 'R3', 'R4', 'R5'],
            'region_name': ['Alpha', 'Bravo', 'Charlie', 'Delta', 'Echo'],
        },
        geometry=[box(2 * i, 0, 2 * i + 2, 2) for i in range(5)],
        crs="EPSG:4326",
    )


@pytest.fixture
def west_region():
    """A single region covering only negative longitudes."""
    return gpd.GeoDataFrame(
        {'region_id': ['W'], 'region_name': ['West']},
        geometry=[box(-10, -5, -1, 5)],
        crs="EPSG:4326",
    )


@pytest.fixture
def occurrence_df():
    """Occurrences in GBIF simple-download layout."""
    return pd.DataFrame({
        'gbifID': ['1001', '1002', '1003', '1004', '1005', '1006'],
        'species': ['Quercus ilex', 'Quercus ilex', 'Pinus pinea',
                    'Pinus pinea', 'Olea europaea', 'Quercus suber'],
        'decimalLongitude': [1.0, 3.0, 3.5, 3.0, 11.0, None],
        'decimalLatitude': [1.0, 1.0, 0.5, 1.0, 1.0, 1.0],
        'basisOfRecord': ['HUMAN_OBSERVATION'] * 6,
    })


@pytest.fixture
def regions_file(tmp_path, five_regions):
    """The five-region set written to a GeoPackage."""
    path = tmp_path / "regions.gpkg"
    five_regions.to_file(path, driver="GPKG")
    return path


@pytest.fixture
def occurrences_file(tmp_path, occurrence_df):
    """The occurrence fixture written as a tab-separated file."""
    path = tmp_path / "occurrences.tsv"
    occurrence_df.to_csv(path, sep='\t', index=False)
    return path
