import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin

from sdm_pipeline.config import FIXED_FEATURES
from sdm_pipeline.utils.preprocessing import write_stack


# Синтетическая сетка 4x4 с шагом 1 градус
SCENARIO_GRID = np.array([
    [0.1, 0.2, 0.9, 0.8],
    [0.3, 0.4, 0.85, 0.75],
    [0.05, 0.15, 0.6, 0.5],
    [0.0, 0.1, 0.4, 0.3],
], dtype="float32")


def haversine_m(lon1, lat1, lon2, lat2, radius=6378137.0):
    lon1, lat1, lon2, lat2 = map(np.radians, (lon1, lat1, lon2, lat2))
    a = np.sin((lat2 - lat1) / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2
    return 2 * radius * np.arcsin(np.sqrt(a))


@pytest.fixture
def wgs84():
    return CRS.from_epsg(4326)


@pytest.fixture
def scenario_grid():
    return SCENARIO_GRID.copy()


@pytest.fixture
def selected_stack_file(tmp_path, wgs84):
    """8-слойный стек 20x20 с шагом 0.5 градуса от (60, 45), с пустым углом."""
    rng = np.random.default_rng(0)
    stack = rng.normal(size=(len(FIXED_FEATURES), 20, 20)).astype("float32")
    stack[:, 0, 0] = np.nan
    transform = from_origin(60.0, 45.0, 0.5, 0.5)
    path = str(tmp_path / "selected.tif")
    write_stack(path, stack, transform, wgs84, list(FIXED_FEATURES))
    return path, stack, transform
