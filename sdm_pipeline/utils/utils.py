import os
import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import xy
from sklearn.neighbors import BallTree

# Радиус Земли как в raster::pointDistance (distHaversine), м
EARTH_RADIUS_M = 6378137.0


# Вспомогательная функция предсказания по стеку батчами
def predict_suitability_for_stack(model, stack, valid_mask, batch_size=500_000):
    bands, H, W = stack.shape
    flat = stack.reshape(bands, -1).T  # (H*W, bands)
    suitability_flat = np.full(H * W, np.nan, dtype="float32")
    valid_idx = np.flatnonzero(valid_mask.ravel())
    for start in range(0, len(valid_idx), batch_size):
        end = start + batch_size
        sel = valid_idx[start:end]
        X_pred = flat[sel]
        pred = model.predict_proba(X_pred)[:, 1].astype("float32")
        suitability_flat[sel] = pred
    return suitability_flat.reshape(H, W)


def save_geotiff(output_path, array2d, profile):
    os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
    prof = profile.copy()
    with rasterio.open(output_path, "w", **prof) as dst:
        dst.write(array2d.astype(prof.get("dtype", "float32")), 1)


def read_geotiff(path):
    """Читает первый слой GeoTIFF: массив (nodata -> NaN), transform, profile."""
    with rasterio.open(path) as src:
        arr = np.ma.filled(src.read(1, masked=True).astype("float32"), np.nan)
        return arr, src.transform, src.profile.copy()


def extract_features_from_stack(stack, rows, cols):
    """Извлекает значения предикторов из стека по индексам пикселей.
       Возвращает X: (n_samples, n_bands)."""
    # stack: (bands, H, W)
    # fancy-indexing
    return stack[:, rows, cols].T  # (n_samples, n_bands)


def nearest_distance_m(lons, lats, ref_lons, ref_lats):
    """Расстояние по большому кругу (м) от каждой точки до ближайшей точки из ref."""
    lons = np.asarray(lons, dtype=float)
    if len(ref_lons) == 0:
        return np.full(len(lons), np.inf)
    tree = BallTree(np.radians(np.column_stack([ref_lats, ref_lons])), metric='haversine')
    dist, _ = tree.query(np.radians(np.column_stack([lats, lons])), k=1)
    return dist[:, 0] * EARTH_RADIUS_M


# Сэмплирует фоновые точки по валидным пикселям опорного слоя
def sample_background(stack, transform, band_names, presence_lons, presence_lats,
                      n_points, rng, min_distance_m=10000):
    """
    Генерирует фоновые точки (псевдоотсутствия).

    1. n_points случайных пикселей без повторов среди валидных пикселей первого слоя стека.
    2. Отбрасываются точки ближе min_distance_m к любой точке присутствия.
    3. Для оставшихся извлекаются значения предикторов, неполные строки удаляются.

    Итоговое количество зависит от данных и может быть меньше n_points.

    Args:
        stack (np.ndarray): Стек предикторов (bands, H, W), NaN - нет данных.
        transform (affine.Affine): Геопривязка стека.
        band_names (list[str]): Имена слоёв.
        presence_lons, presence_lats (array-like): Координаты присутствий.
        n_points (int): Сколько пикселей сэмплировать.
        rng (np.random.Generator): Генератор случайных чисел (с заданным seed).
        min_distance_m (float): Минимальное расстояние до присутствий, м.

    Returns:
        pd.DataFrame: longitude, latitude и колонки предикторов.
    """
    _, height, width = stack.shape
    candidates = np.flatnonzero(~np.isnan(stack[0]))
    if candidates.size == 0:
        print("ВНИМАНИЕ: Нет доступных валидных пикселей для генерации фона.")
        return pd.DataFrame(columns=['longitude', 'latitude'] + list(band_names))

    n = min(int(n_points), candidates.size)
    chosen = rng.choice(candidates, size=n, replace=False)
    rows = chosen // width
    cols = chosen % width
    # центры пикселей
    lons, lats = xy(transform, rows, cols, offset="center")
    lons = np.asarray(lons, dtype=float)
    lats = np.asarray(lats, dtype=float)
    print(f"Сгенерировано фоновых точек: {n}")

    dist = nearest_distance_m(lons, lats, np.asarray(presence_lons, dtype=float),
                              np.asarray(presence_lats, dtype=float))
    keep = dist > min_distance_m
    print(f"Дальше {min_distance_m / 1000:g} км от присутствий: {int(keep.sum())}")

    X = extract_features_from_stack(stack, rows[keep], cols[keep])
    bg = pd.DataFrame(X, columns=list(band_names))
    bg.insert(0, 'latitude', lats[keep])
    bg.insert(0, 'longitude', lons[keep])
    bg = bg.dropna().reset_index(drop=True)
    print(f"Итого фоновых точек: {len(bg)}")
    return bg
