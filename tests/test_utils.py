import warnings
import numpy as np
import pandas as pd
from rasterio.transform import xy

from sdm_pipeline.config import FIXED_FEATURES
from sdm_pipeline.utils.preprocessing import extract_values_at_points
from sdm_pipeline.utils.utils import (nearest_distance_m, predict_suitability_for_stack, read_geotiff,
                                      sample_background, save_geotiff)

from conftest import haversine_m

PRESENCE_LONS = np.array([62.3, 65.1, 68.8])
PRESENCE_LATS = np.array([43.2, 40.4, 37.6])


def test_nearest_distance_matches_haversine():
    lons = np.array([60.0, 70.0, 65.0])
    lats = np.array([45.0, 30.0, 40.4])
    dist = nearest_distance_m(lons, lats, PRESENCE_LONS, PRESENCE_LATS)
    expected = np.min(haversine_m(lons[:, None], lats[:, None], PRESENCE_LONS[None, :], PRESENCE_LATS[None, :]),
                      axis=1)
    np.testing.assert_allclose(dist, expected, rtol=1e-9)


def test_nearest_distance_without_references():
    assert np.isinf(nearest_distance_m([60.0], [45.0], [], [])).all()


def test_background_points_are_far_from_presences(selected_stack_file):
    _, stack, transform = selected_stack_file
    rng = np.random.default_rng(123)
    bg = sample_background(stack, transform, list(FIXED_FEATURES), PRESENCE_LONS, PRESENCE_LATS,
                           n_points=300, rng=rng, min_distance_m=10000)

    assert list(bg.columns) == ['longitude', 'latitude'] + list(FIXED_FEATURES)
    assert 0 < len(bg) <= 300
    assert not bg.isna().any().any()
    dist = haversine_m(bg['longitude'].values[:, None], bg['latitude'].values[:, None],
                       PRESENCE_LONS[None, :], PRESENCE_LATS[None, :]).min(axis=1)
    assert (dist >= 10000 - 1e-6).all()
    # центры пикселей
    assert np.allclose((bg['longitude'] - 60.25) % 0.5, 0)


def test_background_sampling_is_seeded(selected_stack_file):
    _, stack, transform = selected_stack_file
    kwargs = dict(presence_lons=PRESENCE_LONS, presence_lats=PRESENCE_LATS, n_points=150, min_distance_m=10000)
    a = sample_background(stack, transform, list(FIXED_FEATURES), rng=np.random.default_rng(123), **kwargs)
    b = sample_background(stack, transform, list(FIXED_FEATURES), rng=np.random.default_rng(123), **kwargs)
    c = sample_background(stack, transform, list(FIXED_FEATURES), rng=np.random.default_rng(7), **kwargs)

    pd.testing.assert_frame_equal(a, b)
    assert not a[['longitude', 'latitude']].equals(c[['longitude', 'latitude']])


def test_background_excludes_presence_cells(selected_stack_file):
    _, stack, transform = selected_stack_file
    # присутствие в центре каждого пикселя - фону некуда встать
    cols, rows = np.meshgrid(np.arange(20), np.arange(20))
    lons, lats = xy(transform, rows.ravel(), cols.ravel())
    bg = sample_background(stack, transform, list(FIXED_FEATURES), lons, lats,
                           n_points=1000, rng=np.random.default_rng(1))
    assert len(bg) == 0


def test_background_is_capped_by_valid_cells(selected_stack_file):
    _, stack, transform = selected_stack_file
    bg = sample_background(stack, transform, list(FIXED_FEATURES), [0.0], [0.0],
                           n_points=10000, rng=np.random.default_rng(1))
    assert len(bg) == 20 * 20 - 1
    assert not bg.duplicated(subset=['longitude', 'latitude']).any()


class ConstantModel:
    def predict_proba(self, X):
        p = np.clip(X[:, 0], 0, 1)
        return np.column_stack((1 - p, p))


def test_predict_suitability_keeps_nodata(selected_stack_file):
    _, stack, _ = selected_stack_file
    valid_mask = np.all(~np.isnan(stack), axis=0)
    surface = predict_suitability_for_stack(ConstantModel(), stack, valid_mask, batch_size=37)

    assert surface.dtype == np.float32
    assert np.isnan(surface[0, 0])
    assert np.isfinite(surface[valid_mask]).all()
    assert surface[valid_mask].min() >= 0 and surface[valid_mask].max() <= 1


def test_geotiff_round_trip(tmp_path, scenario_grid, wgs84):
    from rasterio.transform import from_origin
    grid = scenario_grid.copy()
    grid[3, 0] = np.nan
    profile = {"driver": "GTiff", "height": 4, "width": 4, "count": 1, "dtype": "float32",
               "crs": wgs84, "transform": from_origin(0, 4, 1, 1), "nodata": np.nan}
    path = str(tmp_path / 'out' / 'grid.tif')
    save_geotiff(path, grid, profile)

    arr, transform, prof = read_geotiff(path)
    np.testing.assert_allclose(arr, grid)
    assert transform == profile['transform']


def test_pixel_coordinates_without_deprecated_affine_calls(selected_stack_file):
    _, stack, transform = selected_stack_file
    with warnings.catch_warnings():
        warnings.simplefilter("error", PendingDeprecationWarning)
        warnings.simplefilter("error", DeprecationWarning)
        bg = sample_background(stack, transform, list(FIXED_FEATURES), PRESENCE_LONS, PRESENCE_LATS,
                               n_points=50, rng=np.random.default_rng(2))
        values = extract_values_at_points(stack, transform, bg['longitude'].values, bg['latitude'].values)
    np.testing.assert_allclose(values, bg[list(FIXED_FEATURES)].values)
