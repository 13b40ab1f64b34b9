import os
import pandas as pd
import numpy as np
import rasterio
from pygbif import occurrences

from ..errors import OccurrenceDownloadError


# Колонки записи наблюдения в том виде, в котором они сохраняются после очистки
OCCURRENCE_COLUMNS = {
    'species': 'species',
    'decimalLongitude': 'longitude',
    'decimalLatitude': 'latitude',
    'year': 'year',
    'month': 'month',
    'basisOfRecord': 'basisOfRecord',
    'coordinateUncertaintyInMeters': 'coordinateUncertaintyInMeters',
    'country': 'country',
    'locality': 'locality',
    'occurrenceID': 'occurrenceID',
}


def build_wkt_polygon(extent):
    """Замкнутый WKT-полигон для bbox (min_lon, min_lat, max_lon, max_lat)."""
    min_lon, min_lat, max_lon, max_lat = extent
    return (f"POLYGON(({min_lon} {min_lat},{max_lon} {min_lat},{max_lon} {max_lat},"
            f"{min_lon} {max_lat},{min_lon} {min_lat}))")


def _search_pages(species_name, limit, page_size, geometry=None):
    """Постранично выкачивает записи GBIF (API отдаёт не более 300 записей за запрос)."""
    records = []
    offset = 0
    while len(records) < limit:
        params = {
            'scientificName': species_name,
            'hasCoordinate': True,
            'limit': min(page_size, limit - len(records)),
            'offset': offset,
        }
        if geometry is not None:
            params['geometry'] = geometry
        results = occurrences.search(**params)
        page = results.get('results', [])
        if not page:
            break
        records.extend(page)
        offset += len(page)
        if results.get('endOfRecords', True):
            break
    return pd.DataFrame(records[:limit])


def fetch_gbif_occurrences(species_name, extent, limit=5000, page_size=300):
    """
    Загружает наблюдения вида из GBIF.

    Сначала запрос с геометрией (bbox области), если он ничего не вернул -
    повторяем без пространственного фильтра.

    Args:
        species_name (str): Научное название вида.
        extent (tuple): (min_lon, min_lat, max_lon, max_lat).
        limit (int): Максимальное количество записей.
        page_size (int): Размер страницы запроса.

    Returns:
        pd.DataFrame: Сырые записи GBIF (может быть пустым).

    Raises:
        OccurrenceDownloadError: Ошибка соединения с GBIF.
    """
    wkt_polygon = build_wkt_polygon(extent)
    try:
        df = _search_pages(species_name, limit, page_size, geometry=wkt_polygon)
        if len(df) == 0:
            print("ВНИМАНИЕ: с пространственным фильтром данных нет. Пробуем без геометрии...")
            df = _search_pages(species_name, limit, page_size)
    except Exception as e:
        print("Ошибка соединения с GBIF:")
        print(f"  {e}")
        raise OccurrenceDownloadError(f"Ошибка соединения с GBIF: {e}") from e
    return df


def detect_coordinate_columns(df):
    """Определяет названия колонок с координатами (lon_col, lat_col)."""
    lat_col = 'lat'
    lon_col = 'lon'

    if 'Latitude' in df.columns:
        lat_col = 'Latitude'
        lon_col = 'Longitude'

    if 'latitude' in df.columns:
        lat_col = 'latitude'
        lon_col = 'longitude'

    if 'decimalLatitude' in df.columns:
        lat_col = 'decimalLatitude'
        lon_col = 'decimalLongitude'

    if lat_col not in df.columns or lon_col not in df.columns:
        raise ValueError('Ошибка обработки csv. Проверьте, что у входных данных корректный формат.')
    return lon_col, lat_col


def read_manual_occurrences(csv_path):
    """Читает выгрузку GBIF, скачанную вручную (tab или comma separated)."""
    df = pd.read_csv(csv_path, sep=None, engine='python', on_bad_lines='skip')
    print(f"Прочитан файл ручной выгрузки: {csv_path}, записей: {len(df)}")
    return df


def clean_occurrences(raw, extent, max_uncertainty_m=10000):
    """
    Очищает наблюдения: выбор колонок, пустые координаты, bbox, дубликаты, точность.

    Порядок шагов как в исходном сценарии: сначала bbox, потом дубликаты координат,
    потом фильтр по coordinateUncertaintyInMeters (пустое значение - допустимо).
    """
    lon_col, lat_col = detect_coordinate_columns(raw)
    df = raw.rename(columns={lon_col: 'decimalLongitude', lat_col: 'decimalLatitude'})
    df = df.reindex(columns=list(OCCURRENCE_COLUMNS)).rename(columns=OCCURRENCE_COLUMNS)

    print(f"Исходных записей: {len(df)}")

    df['longitude'] = pd.to_numeric(df['longitude'], errors='coerce')
    df['latitude'] = pd.to_numeric(df['latitude'], errors='coerce')
    df = df.dropna(subset=['longitude', 'latitude'])
    print(f"После удаления пустых координат: {len(df)}")

    min_lon, min_lat, max_lon, max_lat = extent
    df = df[(df['longitude'] >= min_lon) & (df['longitude'] <= max_lon) &
            (df['latitude'] >= min_lat) & (df['latitude'] <= max_lat)]
    print(f"После фильтрации по области: {len(df)}")

    df = df.drop_duplicates(subset=['longitude', 'latitude'], keep='first')
    print(f"После удаления дубликатов координат: {len(df)}")

    uncertainty = pd.to_numeric(df['coordinateUncertaintyInMeters'], errors='coerce')
    df = df[uncertainty.isna() | (uncertainty <= max_uncertainty_m)]
    print(f"После фильтрации по точности координат: {len(df)}")

    return df.reset_index(drop=True)


def stringify_list_columns(df):
    """Переводит колонки со списками/словарями в строки, чтобы сырые данные легли в CSV."""
    df = df.copy()
    for col in df.columns:
        if df[col].map(lambda v: isinstance(v, (list, dict))).any():
            df[col] = df[col].map(lambda v: str(v) if isinstance(v, (list, dict)) else v)
    return df


def load_species_occurrence_data(species_name, extent, raw_csv, cleaned_csv, manual_csv='',
                                 limit=5000, page_size=300, max_uncertainty_m=10000):
    """
    Загрузка и очистка наблюдений вида. Возвращает очищенную таблицу.

    Если manual_csv существует - он используется вместо обращения к GBIF.
    """
    if manual_csv and os.path.isfile(manual_csv):
        print(f"Найдена ручная выгрузка, GBIF не опрашиваем: {manual_csv}")
        raw = read_manual_occurrences(manual_csv)
    else:
        print("Загрузка данных из GBIF...")
        try:
            raw = fetch_gbif_occurrences(species_name, extent, limit, page_size)
        except OccurrenceDownloadError:
            print("Варианты решения:")
            print("1. Проверьте подключение к интернету")
            print("2. Скачайте данные вручную: https://www.gbif.org/occurrence/search?q=" + species_name.replace(' ', '%20'))
            print(f"3. Сохраните CSV в: {manual_csv}")
            raise

    if raw is None or len(raw) == 0:
        raise OccurrenceDownloadError('Нет данных о наблюдениях. Проверьте подключение или скачайте данные вручную.')

    print(f"Загружено записей: {len(raw)}")

    os.makedirs(os.path.dirname(raw_csv) or '.', exist_ok=True)
    stringify_list_columns(raw).to_csv(raw_csv, index=False)
    print(f"Сырые данные сохранены: {raw_csv}")

    occ = clean_occurrences(raw, extent, max_uncertainty_m)
    if len(occ) == 0:
        raise OccurrenceDownloadError('После очистки не осталось ни одного наблюдения в области моделирования.')

    os.makedirs(os.path.dirname(cleaned_csv) or '.', exist_ok=True)
    occ.to_csv(cleaned_csv, index=False)
    print(f"Очищенные данные сохранены: {cleaned_csv}")

    print(f"\nВсего точек: {len(occ)}")
    if occ['year'].notna().any():
        print(f"Годы наблюдений: {int(occ['year'].min())} - {int(occ['year'].max())}")
    print("Записи по странам:")
    print(occ['country'].value_counts(dropna=False).to_string())
    print("Записи по типу:")
    print(occ['basisOfRecord'].value_counts(dropna=False).to_string())

    return occ


def load_environmental_predictors(raster_path, predictors='all'):
    """Считывает многоканальный GeoTIFF и строит стек (bands, H, W).
       Возвращает: stack(float32), valid_mask(bool), transform, crs, profile, band_names(list)"""

    if not os.path.isfile(raster_path):
        raise FileNotFoundError(f"Не найден растр предикторов: {raster_path}")

    with rasterio.open(raster_path) as ds:
        all_names = [d if d else f"band{i + 1}" for i, d in enumerate(ds.descriptions)]

        # фильтруем по входящему списку предикторов, сохраняя заданный порядок
        if isinstance(predictors, str):
            if predictors.strip().lower() == 'all':
                desired = all_names
            else:
                desired = [p.strip() for p in predictors.split(',') if p.strip()]
        else:
            desired = list(predictors)

        missing = [name for name in desired if name not in all_names]
        if missing:
            raise ValueError(f"В растре {raster_path} нет слоёв: {', '.join(missing)}. "
                             f"Найдены только: {', '.join(all_names)}")

        band_arrays = []
        for name in desired:
            arr = ds.read(all_names.index(name) + 1, masked=True).astype("float32")  # masked -> маскирует nodata
            band_arrays.append(np.ma.filled(arr, np.nan))                          # превращаем masked в np.nan

        ref_transform = ds.transform
        ref_crs = ds.crs
        ref_width, ref_height = ds.width, ds.height

    stack = np.stack(band_arrays, axis=0)  # shape: (bands, H, W)
    # Маска валидных пикселей: валиден, если нет NaN во всех слоях
    valid_mask = np.all(~np.isnan(stack), axis=0)
    # Профиль для сохранения результата
    profile = {
        "driver": "GTiff",
        "height": ref_height,
        "width": ref_width,
        "count": 1,
        "dtype": "float32",
        "crs": ref_crs,
        "transform": ref_transform,
        "compress": "lzw",
        "nodata": np.nan
    }
    return stack, valid_mask, ref_transform, ref_crs, profile, desired
