import io
import os
import zipfile
import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from sdm_pipeline.config import FIXED_FEATURES
from sdm_pipeline.utils import preprocessing
from sdm_pipeline.utils.preprocessing import (correlation_matrix, crop_stack_to_bbox, download_worldclim,
                                              environmental_summary, extract_values_at_points, find_correlation,
                                              fixed_feature_list, low_correlation_set, points_to_pixel_indices,
                                              subset_stack, worldclim_layer_paths, worldclim_res_label)


def write_single_band(path, array, transform, crs):
    profile = {
        "driver": "GTiff", "height": array.shape[0], "width": array.shape[1], "count": 1,
        "dtype": "float32", "crs": crs, "transform": transform, "nodata": -9999.0,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(array.astype("float32"), 1)


def test_worldclim_res_label():
    assert worldclim_res_label(2.5) == '2.5m'
    assert worldclim_res_label(10) == '10m'
    assert worldclim_res_label(0.5) == '30s'


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i:i + chunk_size]


def make_archive(names):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        for name in names:
            zf.writestr(name, b'not really a tif')
    return buf.getvalue()


def test_download_worldclim_extracts_and_caches(tmp_path, monkeypatch):
    names = [f"wc2.1_2.5m_bio_{i}.tif" for i in (10, 2, 1)]
    urls = []

    def fake_get(url, stream=False):
        urls.append(url)
        return FakeResponse(make_archive(names))

    monkeypatch.setattr(preprocessing.requests, 'get', fake_get)
    dest = str(tmp_path / 'worldclim')
    paths = download_worldclim(dest, 'bio', 2.5, base_url='https://example.org/base')

    assert urls == ['https://example.org/base/wc2.1_2.5m_bio.zip']
    assert [os.path.basename(p) for p in paths] == ["wc2.1_2.5m_bio_1.tif", "wc2.1_2.5m_bio_2.tif",
                                                     "wc2.1_2.5m_bio_10.tif"]
    assert not os.path.exists(os.path.join(dest, 'wc2.1_2.5m_bio.zip.part'))

    def must_not_download(url, stream=False):
        raise AssertionError("повторная загрузка")

    monkeypatch.setattr(preprocessing.requests, 'get', must_not_download)
    assert download_worldclim(dest, 'bio', 2.5) == paths
    assert worldclim_layer_paths(dest, 'bio', 2.5) == paths


def test_crop_stack_to_bbox(tmp_path, wgs84):
    transform = from_origin(-180.0, 90.0, 5.0, 5.0)
    layers = []
    for i in range(2):
        arr = np.arange(36 * 72, dtype="float32").reshape(36, 72) + 1000 * i
        path = str(tmp_path / f"layer_{i}.tif")
        write_single_band(path, arr, transform, wgs84)
        layers.append((path, arr))

    out = str(tmp_path / 'cropped.tif')
    crop_stack_to_bbox([p for p, _ in layers], (60.0, 25.0, 105.0, 45.0), out, ['bio1', 'bio2'])

    with rasterio.open(out) as src:
        assert src.count == 2
        assert list(src.descriptions) == ['bio1', 'bio2']
        assert (src.height, src.width) == (4, 9)
        assert src.transform.c == pytest.approx(60.0)
        assert src.transform.f == pytest.approx(45.0)
        data = src.read()
    # строки 9..12, колонки 48..56 исходной сетки
    np.testing.assert_array_equal(data[0], layers[0][1][9:13, 48:57])
    np.testing.assert_array_equal(data[1], layers[1][1][9:13, 48:57])


def test_crop_outside_raster_fails(tmp_path, wgs84):
    path = str(tmp_path / 'small.tif')
    write_single_band(path, np.ones((2, 2)), from_origin(0.0, 2.0, 1.0, 1.0), wgs84)
    with pytest.raises(ValueError):
        crop_stack_to_bbox([path], (60.0, 25.0, 105.0, 45.0), str(tmp_path / 'out.tif'), ['bio1'])


def test_subset_stack_keeps_requested_order(tmp_path, selected_stack_file):
    path, stack, _ = selected_stack_file
    out = str(tmp_path / 'subset.tif')
    subset_stack(path, out, ['bio19', 'bio3'])
    with rasterio.open(out) as src:
        assert list(src.descriptions) == ['bio19', 'bio3']
        np.testing.assert_array_equal(src.read(1)[1:], stack[7][1:])


def test_points_to_pixel_indices_and_extract(selected_stack_file):
    _, stack, transform = selected_stack_file
    lons = np.array([60.25, 61.1, 59.0, 69.9])
    lats = np.array([44.75, 44.4, 44.0, 35.1])
    rows, cols, inside = points_to_pixel_indices(lons, lats, transform, 20, 20)

    assert list(inside) == [True, True, False, True]
    assert (rows[1], cols[1]) == (1, 2)
    assert (rows[3], cols[3]) == (19, 19)

    values = extract_values_at_points(stack, transform, lons, lats)
    assert values.shape == (4, len(FIXED_FEATURES))
    assert np.isnan(values[0]).all()   # пустой пиксель
    assert np.isnan(values[2]).all()   # вне растра
    np.testing.assert_allclose(values[1], stack[:, 1, 2])


def test_points_on_east_and_south_edge_belong_to_last_pixel():
    transform = from_origin(60.0, 45.0, 1.0, 1.0)
    stack = np.arange(16, dtype="float32").reshape(1, 4, 4)
    lons = np.array([64.0, 62.5, 64.0, 64.5])
    lats = np.array([41.0, 41.0, 43.5, 43.5])

    rows, cols, inside = points_to_pixel_indices(lons, lats, transform, 4, 4)
    assert list(inside) == [True, True, True, False]
    assert (rows[0], cols[0]) == (3, 3)
    assert (rows[1], cols[1]) == (3, 2)
    assert (rows[2], cols[2]) == (1, 3)

    values = extract_values_at_points(stack, transform, lons, lats)[:, 0]
    np.testing.assert_array_equal(values[:3], [15.0, 14.0, 7.0])
    assert np.isnan(values[3])


def test_edge_points_on_worldclim_grid_are_kept():
    # 2.5 угловых минуты, обрезка 60..105 x 25..45
    res = 2.5 / 60
    transform = from_origin(60.0, 45.0, res, res)
    rows, cols, inside = points_to_pixel_indices([105.0, 60.0], [25.0, 45.0], transform, 1080, 480)
    assert inside.all()
    assert (rows[0], cols[0]) == (479, 1079)
    assert (rows[1], cols[1]) == (0, 0)


def test_environmental_summary():
    df = pd.DataFrame({'bio1': [1.0, 2.0, 3.0], 'bio12': [10.0, 10.0, 40.0]})
    summary = environmental_summary(df, ['bio1', 'bio12'])
    assert list(summary.columns) == ['Variable', 'Mean', 'SD', 'Min', 'Max']
    assert summary.loc[0, 'SD'] == 1.0
    assert summary.loc[1, 'Mean'] == 20.0
    assert summary.loc[1, 'Max'] == 40.0


def test_find_correlation_drops_one_of_correlated_pair():
    names = ['bio1', 'bio2', 'bio3', 'bio4', 'bio5']
    cor = pd.DataFrame(np.eye(5), index=names, columns=names)
    cor.loc['bio1', 'bio3'] = cor.loc['bio3', 'bio1'] = 0.95
    cor.loc['bio2', 'bio4'] = cor.loc['bio4', 'bio2'] = 0.3

    dropped = find_correlation(cor, 0.7)

    assert len(dropped) == 1
    assert dropped[0] in ('bio1', 'bio3')
    # при равной средней корреляции удаляется вторая переменная пары
    assert dropped == ['bio3']
    assert low_correlation_set(cor, 0.7) == ['bio1', 'bio2', 'bio4', 'bio5']


def test_find_correlation_prefers_more_connected_variable():
    names = ['a', 'b', 'c']
    cor = pd.DataFrame([[1.0, 0.9, 0.8], [0.9, 1.0, 0.1], [0.8, 0.1, 1.0]], index=names, columns=names)
    assert find_correlation(cor, 0.7) == ['a']


def test_variable_selection_is_idempotent():
    rng = np.random.default_rng(5)
    base = rng.normal(size=(200, 3))
    env = pd.DataFrame({
        'bio1': base[:, 0],
        'bio5': base[:, 0] * 2 + rng.normal(scale=0.1, size=200),
        'bio12': base[:, 1],
        'bio14': base[:, 1] + rng.normal(scale=0.2, size=200),
        'bio15': base[:, 2],
    })
    cor = correlation_matrix(env)
    assert np.allclose(cor.values, cor.values.T)

    first = low_correlation_set(cor, 0.7)
    second = low_correlation_set(correlation_matrix(env.copy()), 0.7)
    assert first == second
    kept = cor.loc[first, first].abs().to_numpy(copy=True)
    np.fill_diagonal(kept, 0)
    assert (kept <= 0.7).all()


def test_find_correlation_rejects_bad_input():
    with pytest.raises(ValueError):
        find_correlation(pd.DataFrame([[1.0]], index=['a'], columns=['a']))
    with pytest.raises(ValueError):
        find_correlation(pd.DataFrame([[1.0, 0.2], [0.9, 1.0]], index=['a', 'b'], columns=['a', 'b']))


def test_fixed_feature_list_is_production_set():
    assert fixed_feature_list() == ['bio1', 'bio2', 'bio3', 'bio4', 'bio12', 'bio15', 'bio18', 'bio19']
    fixed_feature_list().append('bio7')
    assert len(fixed_feature_list()) == 8
