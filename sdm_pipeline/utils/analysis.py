import os
import math
import numpy as np
import pandas as pd
import geopandas as gpd
import rasterio
from rasterio.features import geometry_mask
from rasterio.windows import Window

from .preprocessing import download_file, extract_values_at_points
from ..config import BIOCLIM_DESCRIPTIONS

BINARY_NODATA = 255

SUITABILITY_BREAKS = [0.0, 0.25, 0.5, 0.75, 1.0]
SUITABILITY_LABELS = ['Low', 'Moderate', 'High', 'Very High']


# --- Классификация ---
def is_stale_raster(path, n_probe=100):
    """
    Быстрая проверка сохранённой карты пригодности.

    Читаются первые n_probe пикселей первого слоя; если файла нет или все они пустые -
    растр считается испорченным и его нужно построить заново.
    """
    if not os.path.isfile(path):
        return True
    with rasterio.open(path) as src:
        n_rows = min(src.height, int(math.ceil(n_probe / src.width)))
        sample = src.read(1, window=Window(0, 0, src.width, n_rows), masked=True)
    sample = np.ma.filled(sample.astype("float32"), np.nan).ravel()[:n_probe]
    return bool(np.all(np.isnan(sample)))


def choose_threshold(thresholds, suitability):
    """Порог spec_sens, если он есть и положителен, иначе медиана прогноза."""
    t = thresholds.get('spec_sens') if thresholds is not None else None
    if t is not None and np.isfinite(t) and t > 0:
        print(f"Порог (max sensitivity + specificity): {t:.4f}")
        return float(t)
    t = float(np.nanmedian(suitability))
    print(f"Порог spec_sens недоступен, используется медиана прогноза: {t:.4f}")
    return t


def binarize(suitability, threshold):
    """0/1 по правилу value >= threshold; пустые пиксели -> BINARY_NODATA (uint8)."""
    binary = np.full(suitability.shape, BINARY_NODATA, dtype="uint8")
    valid = ~np.isnan(suitability)
    binary[valid] = (suitability[valid] >= threshold).astype("uint8")
    return binary


def cell_area_km2(res_x, res_y, lat=35.0, km_per_degree=111.0):
    """Площадь ячейки в км² с одной поправкой cos(lat) для всей области."""
    return (res_x * km_per_degree) * (res_y * km_per_degree * math.cos(math.radians(lat)))


def habitat_area(binary, cell_area):
    """Количество пригодных/непригодных ячеек, площадь и доля от области."""
    suitable = int(np.sum(binary == 1))
    unsuitable = int(np.sum(binary == 0))
    total = suitable + unsuitable
    percent = suitable / total * 100 if total else 0.0
    return {
        'Cell_Area_km2': round(cell_area, 2),
        'Suitable_Cells': suitable,
        'Unsuitable_Cells': unsuitable,
        'Total_Cells': total,
        'Suitable_Area_km2': round(suitable * cell_area, 2),
        'Percent_Suitable': round(percent, 2),
    }


# --- Страны ---
def fetch_countries(path, dest_dir):
    """Локальный путь к слою стран: URL скачивается в dest_dir один раз, локальный файл возвращается как есть."""
    if not path.startswith(('http://', 'https://')):
        return path
    local_path = os.path.join(dest_dir, os.path.basename(path.split('?', 1)[0]))
    if os.path.isfile(local_path):
        print(f"Слой стран уже скачан: {local_path}")
        return local_path
    return download_file(path, local_path)


def load_countries(path, names):
    """Полигоны стран Natural Earth (файл или URL), отфильтрованные по списку названий."""
    world = gpd.read_file(path)
    name_col = next((c for c in ('NAME', 'name', 'ADMIN', 'admin') if c in world.columns), None)
    if name_col is None:
        raise ValueError(f"В слое стран {path} нет колонки с названием страны")
    countries = world[world[name_col].isin(names)][[name_col, 'geometry']]
    countries = countries.rename(columns={name_col: 'name'}).reset_index(drop=True)
    if countries.crs is not None and countries.crs.to_epsg() != 4326:
        countries = countries.to_crs(epsg=4326)
    print(f"Стран области найдено: {len(countries)} из {len(names)}")
    return countries


def country_habitat_summary(binary, transform, countries, cell_area):
    """
    Площадь пригодных местообитаний по странам.

    Для каждого полигона: маска по центрам пикселей, сумма пригодных ячеек * площадь ячейки,
    доля от валидных ячеек страны. Страны без пригодных ячеек в таблицу не попадают.

    Returns:
        pd.DataFrame: Country, Suitable_Area_km2, Percent_of_Country (по убыванию площади)
    """
    rows = []
    for name, geom in zip(countries['name'], countries.geometry):
        if geom is None or geom.is_empty:
            continue
        inside = geometry_mask([geom], out_shape=binary.shape, transform=transform, invert=True)
        values = binary[inside]
        valid = values != BINARY_NODATA
        suitable = int(np.sum(values[valid] == 1))
        if suitable > 0:
            rows.append({
                'Country': name,
                'Suitable_Area_km2': round(suitable * cell_area, 2),
                'Percent_of_Country': round(suitable / int(valid.sum()) * 100, 2),
            })

    summary = pd.DataFrame(rows, columns=['Country', 'Suitable_Area_km2', 'Percent_of_Country'])
    return summary.sort_values('Suitable_Area_km2', ascending=False).reset_index(drop=True)


def suitability_classes(suitability, cell_area):
    """Площади классов пригодности Low / Moderate / High / Very High (границы 0, .25, .5, .75, 1)."""
    values = suitability[~np.isnan(suitability)]
    classes = pd.cut(values, bins=SUITABILITY_BREAKS, labels=SUITABILITY_LABELS, include_lowest=True)
    counts = pd.Series(classes).value_counts().reindex(SUITABILITY_LABELS, fill_value=0)
    table = pd.DataFrame({
        'Suitability': SUITABILITY_LABELS,
        'Area_km2': counts.values * cell_area,
    })
    total = table['Area_km2'].sum()
    table['Percent'] = (table['Area_km2'] / total * 100).round(2) if total > 0 else 0.0
    return table


# --- Диагностика ---
def auc_rating(auc):
    """Словесная оценка качества модели по AUC."""
    if auc >= 0.9:
        return 'EXCELLENT'
    if auc >= 0.8:
        return 'GOOD'
    if auc >= 0.7:
        return 'FAIR'
    return 'POOR'


def importance_table(importance):
    """Variable, Contribution, Permutation - по убыванию вклада."""
    table = pd.DataFrame({
        'Variable': list(importance['contribution']),
        'Contribution': list(importance['contribution'].values()),
        'Permutation': [importance['permutation'][v] for v in importance['contribution']],
    })
    return table.sort_values('Contribution', ascending=False, kind='mergesort').reset_index(drop=True)


def response_curves(model, stack, band_names, variables, n_points=100):
    """
    Кривые отклика: переменная меняется от min до max своего слоя,
    остальные зафиксированы на средних значениях слоёв.
    """
    means = np.array([np.nanmean(layer) for layer in stack])
    frames = []
    for var in variables:
        j = band_names.index(var)
        grid = np.linspace(np.nanmin(stack[j]), np.nanmax(stack[j]), n_points)
        X = np.tile(means, (n_points, 1))
        X[:, j] = grid
        frames.append(pd.DataFrame({
            'Variable': var,
            'Value': grid,
            'Suitability': model.predict(X),
        }))
    return pd.concat(frames, ignore_index=True)


def presence_predictions(suitability, transform, lons, lats):
    """Значения карты пригодности в точках присутствия."""
    return extract_values_at_points(suitability[np.newaxis, ...], transform, lons, lats)[:, 0]


def kfold_groups(n, k=5, rng=None):
    """Случайные метки фолдов 1..k, размеры фолдов отличаются не больше чем на 1."""
    if n < k:
        raise ValueError(f"Для {k} фолдов нужно не менее {k} точек присутствия, сейчас: {n}")
    rng = rng if rng is not None else np.random.default_rng()
    return rng.permutation(np.arange(n) % k + 1)


def cross_validate(X_pres, X_bg_pool, make_model, k=5, bg_mult=20, rng=None):
    """
    k-fold кросс-валидация по точкам присутствия.

    В каждом фолде модель обучается на k-1 фолдах присутствий и новой выборке фона
    (bg_mult * число обучающих присутствий, без повторов, не больше размера пула);
    AUC считается по отложенным присутствиям против той же выборки фона.

    Args:
        X_pres (np.ndarray): Признаки присутствий.
        X_bg_pool (np.ndarray): Признаки всех фоновых точек.
        make_model (callable): Создаёт новую необученную модель.

    Returns:
        pd.DataFrame: Fold, AUC
    """
    rng = rng if rng is not None else np.random.default_rng()
    X_pres = np.asarray(X_pres, dtype=float)
    X_bg_pool = np.asarray(X_bg_pool, dtype=float)
    folds = kfold_groups(len(X_pres), k, rng)

    results = []
    for i in range(1, k + 1):
        print(f"  Фолд {i} из {k}...")
        train_pres = X_pres[folds != i]
        test_pres = X_pres[folds == i]
        n_bg = min(len(train_pres) * bg_mult, len(X_bg_pool))
        bg = X_bg_pool[rng.choice(len(X_bg_pool), size=n_bg, replace=False)]

        model = make_model()
        model.fit(train_pres, bg)
        auc = model.evaluate(test_pres, bg)['auc']
        results.append({'Fold': i, 'AUC': auc})

    return pd.DataFrame(results, columns=['Fold', 'AUC'])


def sensitivity_specificity(p_scores, a_scores, threshold):
    """Доля присутствий >= порога и доля фона < порога."""
    p_scores = np.asarray(p_scores, dtype=float)
    a_scores = np.asarray(a_scores, dtype=float)
    return float(np.mean(p_scores >= threshold)), float(np.mean(a_scores < threshold))


def diagnostic_summary(train_auc, test_auc, cv_results, top_variable, mean_presence_prediction):
    """Сводная таблица диагностики модели (Metric, Value)."""
    return pd.DataFrame({
        'Metric': ['Training AUC', 'Testing AUC', 'CV AUC Mean', 'CV AUC SD',
                   'Top Variable', 'Mean Presence Prediction'],
        'Value': [
            round(train_auc, 3),
            round(test_auc, 3),
            round(cv_results['AUC'].mean(), 3),
            round(cv_results['AUC'].std(), 3),
            top_variable,
            round(mean_presence_prediction, 3),
        ],
    })


def publication_tables(train_auc, test_auc, cv_results, threshold, sensitivity, specificity, importance):
    """Таблицы для публикации: качество модели и вклад переменных."""
    table1 = pd.DataFrame({
        'Metric': ['Training AUC', 'Testing AUC', 'CV Mean AUC', 'CV SD',
                   'Threshold', 'Sensitivity', 'Specificity'],
        'Value': [
            round(train_auc, 3),
            round(test_auc, 3),
            round(cv_results['AUC'].mean(), 3),
            round(cv_results['AUC'].std(), 3),
            round(threshold, 4),
            round(sensitivity, 2),
            round(specificity, 2),
        ],
    })
    table2 = pd.DataFrame({
        'Variable': importance['Variable'],
        'Description': [BIOCLIM_DESCRIPTIONS.get(v, v) for v in importance['Variable']],
        'Contribution_Percent': importance['Contribution'].round(2),
    })
    return table1, table2
