import os
import glob
import zipfile
import requests
import rasterio
import numpy as np
import pandas as pd
from rasterio.windows import Window, from_bounds

from ..config import FIXED_FEATURES


# --- Загрузка WorldClim ---
def worldclim_res_label(res):
    """Подпись разрешения в именах файлов WorldClim 2.1: 0.5 -> '30s', 2.5 -> '2.5m', 10 -> '10m'."""
    res = float(res)
    if res == 0.5:
        return '30s'
    if res.is_integer():
        return f"{int(res)}m"
    return f"{res}m"


def worldclim_layer_paths(dest_dir, var='bio', res=2.5):
    """Список GeoTIFF WorldClim в числовом порядке (bio_1, bio_2, ..., bio_19)."""
    label = worldclim_res_label(res)
    pattern = os.path.join(dest_dir, f"wc2.1_{label}_{var}_*.tif")
    paths = glob.glob(pattern)
    return sorted(paths, key=lambda p: int(os.path.splitext(p)[0].rsplit('_', 1)[-1]))


def download_file(url, path):
    """Потоковая загрузка url в path через временный файл .part."""
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    print(f"Скачиваем: {url}")
    tmp_path = path + ".part"
    r = requests.get(url, stream=True)
    r.raise_for_status()
    with open(tmp_path, "wb") as f:
        for chunk in r.iter_content(chunk_size=1 << 20):
            if chunk:
                f.write(chunk)
    os.replace(tmp_path, path)
    print(f"Сохранено: {path}")
    return path


def download_worldclim(dest_dir, var='bio', res=2.5,
                       base_url='https://geodata.ucdavis.edu/climate/worldclim/2_1/base'):
    """
    Скачивает глобальный набор слоёв WorldClim 2.1 и распаковывает его в dest_dir.

    Если слои уже распакованы (или архив уже скачан) - повторно не скачиваем.

    Returns:
        list[str]: Пути к слоям в порядке номеров переменных.
    """
    os.makedirs(dest_dir, exist_ok=True)
    paths = worldclim_layer_paths(dest_dir, var, res)
    if paths:
        print(f"Слои WorldClim уже есть в {dest_dir}: {len(paths)}")
        return paths

    label = worldclim_res_label(res)
    archive_name = f"wc2.1_{label}_{var}.zip"
    archive_path = os.path.join(dest_dir, archive_name)

    if not os.path.isfile(archive_path):
        download_file(f"{base_url}/{archive_name}", archive_path)

    with zipfile.ZipFile(archive_path, 'r') as zf:
        zf.extractall(dest_dir)

    paths = worldclim_layer_paths(dest_dir, var, res)
    if not paths:
        raise FileNotFoundError(f"В архиве {archive_path} нет слоёв {var}")
    print(f"Распаковано слоёв: {len(paths)}")
    return paths


# --- Обрезка по области ---
def bbox_window(src, bbox):
    """Окно растра, покрывающее bbox целыми пикселями (без ресемплинга)."""
    win = from_bounds(*bbox, transform=src.transform)
    eps = 1e-6
    col_start = max(int(np.floor(win.col_off + eps)), 0)
    row_start = max(int(np.floor(win.row_off + eps)), 0)
    col_stop = min(int(np.ceil(win.col_off + win.width - eps)), src.width)
    row_stop = min(int(np.ceil(win.row_off + win.height - eps)), src.height)
    if col_stop <= col_start or row_stop <= row_start:
        raise ValueError(f"Область {bbox} не пересекается с растром {src.name}")
    return Window(col_start, row_start, col_stop - col_start, row_stop - row_start)


def write_stack(output_path, stack, transform, crs, band_names):
    """Сохраняет стек (bands, H, W) в один многоканальный GeoTIFF с именами слоёв."""
    os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
    bands, height, width = stack.shape
    profile = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": bands,
        "dtype": "float32",
        "crs": crs,
        "transform": transform,
        "compress": "lzw",
        "nodata": np.nan,
    }
    with rasterio.open(output_path, "w", **profile) as dst:
        for i, name in enumerate(band_names, start=1):
            dst.write(stack[i - 1].astype("float32"), i)
            dst.set_band_description(i, name)
    return output_path


def crop_stack_to_bbox(input_paths, bbox, output_path, band_names):
    """
    Обрезает каждый слой по bbox и сохраняет все слои одним файлом, сохраняя порядок.

    Args:
        input_paths (list[str]): Пути к глобальным слоям (по одному слою на файл).
        bbox (tuple): (min_lon, min_lat, max_lon, max_lat).
        output_path (str): Куда сохранить многоканальный GeoTIFF.
        band_names (list[str]): Имена слоёв в том же порядке, что input_paths.

    Returns:
        str: output_path
    """
    if len(input_paths) != len(band_names):
        raise ValueError(f"Слоёв {len(input_paths)}, а имён {len(band_names)}")

    arrays = []
    ref_transform = ref_crs = None
    ref_shape = None
    for fp in input_paths:
        with rasterio.open(fp) as src:
            window = bbox_window(src, bbox)
            arr = src.read(1, window=window, masked=True).astype("float32")
            transform = src.window_transform(window)
            if ref_transform is None:
                ref_transform, ref_crs, ref_shape = transform, src.crs, arr.shape
            elif transform != ref_transform or arr.shape != ref_shape or src.crs != ref_crs:
                raise ValueError(f"Растр {fp} не согласован по геометрии с первым растром")
            arrays.append(np.ma.filled(arr, np.nan))

    stack = np.stack(arrays, axis=0)
    write_stack(output_path, stack, ref_transform, ref_crs, band_names)
    print(f"Обрезано слоёв: {len(arrays)}, размер: {ref_shape[0]} x {ref_shape[1]}")
    print(f"Сохранено: {output_path}")
    return output_path


def subset_stack(input_path, output_path, band_names):
    """Сохраняет подмножество слоёв многоканального файла в заданном порядке."""
    with rasterio.open(input_path) as src:
        names = list(src.descriptions)
        missing = [n for n in band_names if n not in names]
        if missing:
            raise ValueError(f"В растре {input_path} нет слоёв: {', '.join(missing)}")
        stack = np.stack([np.ma.filled(src.read(names.index(n) + 1, masked=True).astype("float32"), np.nan)
                          for n in band_names], axis=0)
        transform, crs = src.transform, src.crs
    return write_stack(output_path, stack, transform, crs, band_names)


# --- Значения в точках ---
def points_to_pixel_indices(lons, lats, transform, width, height):
    """Преобразует координаты (lon, lat) в индексы пикселей (row, col).
       Возвращает row, col и маску тех, кто внутри границ растра."""
    # обратное аффинное преобразование даёт дробные (col, row), округляем вниз
    x = np.asarray(lons, dtype=float)
    y = np.asarray(lats, dtype=float)
    inv = ~transform
    cols_f = inv.a * x + inv.b * y + inv.c
    rows_f = inv.d * x + inv.e * y + inv.f
    rows = np.floor(rows_f).astype(int)
    cols = np.floor(cols_f).astype(int)
    # точка ровно на восточной или южной границе относится к последнему пикселю
    rows = np.where(np.isclose(rows_f, height), height - 1, rows)
    cols = np.where(np.isclose(cols_f, width), width - 1, cols)
    inside = (rows >= 0) & (rows < height) & (cols >= 0) & (cols < width)
    return rows, cols, inside


def extract_values_at_points(stack, transform, lons, lats):
    """Значения всех слоёв стека в точках; для точек вне растра - NaN. Форма (n, bands)."""
    bands, height, width = stack.shape
    rows, cols, inside = points_to_pixel_indices(lons, lats, transform, width, height)
    values = np.full((len(rows), bands), np.nan, dtype="float64")
    values[inside] = stack[:, rows[inside], cols[inside]].T
    return values


def environmental_summary(df, columns):
    """Таблица Variable, Mean, SD, Min, Max (SD выборочное, как в R)."""
    return pd.DataFrame({
        'Variable': columns,
        'Mean': [round(df[c].mean(), 2) for c in columns],
        'SD': [round(df[c].std(), 2) for c in columns],
        'Min': [round(df[c].min(), 2) for c in columns],
        'Max': [round(df[c].max(), 2) for c in columns],
    })


# --- Отбор переменных ---
def correlation_matrix(env_df):
    """Симметричная матрица корреляций Пирсона."""
    return env_df.corr(method='pearson')


def find_correlation(cor, cutoff=0.7):
    """
    Жадно находит переменные, которые нужно удалить, чтобы ни одна оставшаяся пара
    не превышала |r| > cutoff.

    Правило: переменные упорядочиваются по средней абсолютной корреляции (по убыванию,
    при равенстве - в исходном порядке). Для каждой пары выше порога удаляется та,
    у которой средняя абсолютная корреляция с ещё не удалёнными переменными больше;
    при равенстве удаляется вторая (идущая позже в этом порядке).

    Args:
        cor (pd.DataFrame): Квадратная симметричная матрица корреляций.
        cutoff (float): Порог абсолютной корреляции.

    Returns:
        list[str]: Имена переменных для удаления, в порядке удаления.
    """
    x = np.abs(np.asarray(cor, dtype=float))
    if x.shape[0] != x.shape[1] or not np.allclose(x, x.T, equal_nan=True):
        raise ValueError("Матрица корреляций не симметрична")
    names = list(cor.columns)
    n = len(names)
    if n < 2:
        raise ValueError("Передана только одна переменная")

    off = x.copy()
    np.fill_diagonal(off, np.nan)
    mean_abs = np.nanmean(off, axis=0)
    order = sorted(range(n), key=lambda i: (-mean_abs[i], i))

    x = x[np.ix_(order, order)]
    x2 = off[np.ix_(order, order)]
    deleted = np.zeros(n, dtype=bool)
    dropped = []

    for i in range(n - 1):
        if deleted[i]:
            continue
        for j in range(i + 1, n):
            if deleted[i]:
                break
            if deleted[j] or not x[i, j] > cutoff:
                continue
            mn_i = np.nanmean(x2[i, :]) if not np.all(np.isnan(x2[i, :])) else 0.0
            mn_j = np.nanmean(x2[j, :]) if not np.all(np.isnan(x2[j, :])) else 0.0
            victim = i if mn_i > mn_j else j
            deleted[victim] = True
            x2[victim, :] = np.nan
            x2[:, victim] = np.nan
            dropped.append(names[order[victim]])
    return dropped


def low_correlation_set(cor, cutoff=0.7):
    """Переменные, оставшиеся после find_correlation, в исходном порядке."""
    dropped = set(find_correlation(cor, cutoff))
    return [name for name in cor.columns if name not in dropped]


def fixed_feature_list():
    """Фиксированный набор переменных для модели, выбранный по биологической значимости."""
    return list(FIXED_FEATURES)
