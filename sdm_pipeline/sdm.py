# sdm_pipeline/sdm.py

import os
import traceback
import importlib.util
import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split

# Импорт функций из utils
from .config import make_config, BIOCLIM_DESCRIPTIONS
from .errors import MaxentUnavailableError
from .utils.data_loader import load_species_occurrence_data, load_environmental_predictors
from .utils.preprocessing import download_worldclim, crop_stack_to_bbox, subset_stack
from .utils.preprocessing import extract_values_at_points, environmental_summary
from .utils.preprocessing import correlation_matrix, find_correlation, low_correlation_set, fixed_feature_list
from .utils.utils import sample_background, save_geotiff, read_geotiff, predict_suitability_for_stack
from .utils.analysis import is_stale_raster, choose_threshold, binarize, cell_area_km2, habitat_area
from .utils.analysis import fetch_countries, load_countries, country_habitat_summary
from .utils.analysis import suitability_classes, BINARY_NODATA
from .utils.analysis import importance_table, response_curves, presence_predictions, cross_validate
from .utils.analysis import sensitivity_specificity, diagnostic_summary, publication_tables, auc_rating


def require_maxent():
    """Возвращает класс MaxEnt; если elapid не установлен - MaxentUnavailableError."""
    if importlib.util.find_spec('elapid') is None:
        print("Пакет elapid не найден. Установите его: pip install elapid")
        raise MaxentUnavailableError("Для обучения MaxEnt нужен пакет elapid (pip install elapid)")
    from .utils.models import MaxEnt
    return MaxEnt


class PythonSDM:
    STAGES = ('download_occurrences', 'prepare_environment', 'select_variables',
              'generate_background', 'fit_model', 'classify_habitat', 'run_diagnostics')

    def __init__(self, config=None):
        config = make_config(config)
        for attribute_name, attribute_value in config.items():
            setattr(self, attribute_name, attribute_value)

        min_lon, min_lat, max_lon, max_lat = self.STUDY_EXTENT
        print(f"-- Вид: {self.SPECIES_NAME}")
        print(f"-- Область моделирования: lon {min_lon}..{max_lon}, lat {min_lat}..{max_lat}")

        # все пути строятся от рабочей папки
        raw_dir = os.path.join(self.WORK_DIR, "data", "raw")
        processed_dir = os.path.join(self.WORK_DIR, "data", "processed")
        models_dir = os.path.join(self.WORK_DIR, "outputs", "models")
        tables_dir = os.path.join(self.WORK_DIR, "outputs", "tables")

        self.RAW_OCC_CSV = os.path.join(raw_dir, "gbif_raw_data.csv")
        if not self.MANUAL_OCC_CSV:
            self.MANUAL_OCC_CSV = os.path.join(raw_dir, "gbif_manual_download.csv")
        self.CLEAN_OCC_CSV = os.path.join(processed_dir, "occurrence_cleaned.csv")
        self.WORLDCLIM_DIR = os.path.join(raw_dir, "worldclim")
        self.COUNTRIES_DIR = os.path.join(raw_dir, "countries")

        self.CROPPED_TIF = os.path.join(processed_dir, "bioclim_cropped.tif")
        self.SELECTED_TIF = os.path.join(processed_dir, "bioclim_selected.tif")
        self.OCC_ENV_CSV = os.path.join(processed_dir, "occurrence_with_environment.csv")
        self.FINAL_DATA_CSV = os.path.join(processed_dir, "final_model_data.csv")
        self.BACKGROUND_CSV = os.path.join(processed_dir, "background_points.csv")

        self.MODEL_FILE = os.path.join(models_dir, "maxent_model.pkl")
        self.SUITABILITY_TIF = os.path.join(models_dir, "habitat_suitability.tif")
        self.BINARY_TIF = os.path.join(models_dir, "binary_habitat.tif")

        self.ENV_SUMMARY_CSV = os.path.join(tables_dir, "environmental_summary.csv")
        self.CORR_MATRIX_CSV = os.path.join(tables_dir, "correlation_matrix.csv")
        self.CORR_SELECTED_CSV = os.path.join(tables_dir, "correlation_selected.csv")
        self.SELECTED_SUMMARY_CSV = os.path.join(tables_dir, "selected_variables_summary.csv")
        self.EVALUATION_CSV = os.path.join(tables_dir, "model_evaluation.csv")
        self.THRESHOLDS_CSV = os.path.join(tables_dir, "model_thresholds.csv")
        self.HABITAT_AREA_CSV = os.path.join(tables_dir, "habitat_area.csv")
        self.COUNTRY_CSV = os.path.join(tables_dir, "habitat_by_country.csv")
        self.CLASSES_CSV = os.path.join(tables_dir, "suitability_classes.csv")
        self.IMPORTANCE_CSV = os.path.join(tables_dir, "variable_importance.csv")
        self.RESPONSE_CSV = os.path.join(tables_dir, "response_curves.csv")
        self.CV_CSV = os.path.join(tables_dir, "cross_validation_results.csv")
        self.DIAGNOSTIC_CSV = os.path.join(tables_dir, "model_diagnostic_summary.csv")
        self.TABLE1_CSV = os.path.join(tables_dir, "Table1_Model_Performance.csv")
        self.TABLE2_CSV = os.path.join(tables_dir, "Table2_Variable_Contribution.csv")

    def _save_table(self, df, path, index=False):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        df.to_csv(path, index=index)
        print(f"Сохранено: {path}")

    def _new_model(self):
        MaxEnt = require_maxent()
        return MaxEnt(self.SELECTED_VARS, feature_types=self.FEATURE_TYPES,
                      beta_multiplier=self.BETA_MULTIPLIER, transform=self.MAXENT_TRANSFORM)

    def _load_model_data(self):
        """Присутствия и фон из CSV, признаки в порядке SELECTED_VARS."""
        presence = pd.read_csv(self.FINAL_DATA_CSV)
        background = pd.read_csv(self.BACKGROUND_CSV)
        X_pres = presence[self.SELECTED_VARS].to_numpy(dtype=float)
        X_bg = background[self.SELECTED_VARS].to_numpy(dtype=float)
        return presence, background, X_pres, X_bg

    def _split(self, X_pres, X_bg):
        """Присутствия и фон делятся 80/20 независимо, с одним и тем же seed."""
        pres_train, pres_test = train_test_split(X_pres, test_size=self.TEST_SIZE, random_state=self.RANDOM_SEED)
        bg_train, bg_test = train_test_split(X_bg, test_size=self.TEST_SIZE, random_state=self.RANDOM_SEED)
        return pres_train, pres_test, bg_train, bg_test

    def _predict_surface(self, model):
        stack, valid_mask, _, _, profile, _ = load_environmental_predictors(self.SELECTED_TIF, self.SELECTED_VARS)
        suitability = predict_suitability_for_stack(model, stack, valid_mask, batch_size=500_000)
        save_geotiff(self.SUITABILITY_TIF, suitability, profile)
        print(f"Карта пригодности сохранена: {self.SUITABILITY_TIF}")
        return suitability

    def download_occurrences(self):
        # 1) Загрузка и очистка наблюдений
        print(f"\n-- 1. Загрузка наблюдений ({self.SPECIES_NAME})")
        self.occ = load_species_occurrence_data(
            self.SPECIES_NAME, self.STUDY_EXTENT, self.RAW_OCC_CSV, self.CLEAN_OCC_CSV,
            manual_csv=self.MANUAL_OCC_CSV, limit=self.GBIF_LIMIT, page_size=self.GBIF_PAGE_SIZE,
            max_uncertainty_m=self.MAX_UNCERTAINTY_M)

    def prepare_environment(self):
        # 2) Климатические слои: загрузка, обрезка, значения в точках наблюдений
        print("\n-- 2. Подготовка климатических предикторов")
        paths = download_worldclim(self.WORLDCLIM_DIR, self.WORLDCLIM_VAR, self.WORLDCLIM_RES, self.WORLDCLIM_URL)
        band_names = [f"{self.WORLDCLIM_VAR}{i}" for i in range(1, len(paths) + 1)]
        crop_stack_to_bbox(paths, self.STUDY_EXTENT, self.CROPPED_TIF, band_names)

        stack, valid_mask, transform, crs, profile, band_names = load_environmental_predictors(self.CROPPED_TIF)
        bands, H, W = stack.shape
        print(f"Загружено предикторов: {bands} | Размер: {H} x {W} | CRS: {crs}")

        occ = pd.read_csv(self.CLEAN_OCC_CSV)
        values = extract_values_at_points(stack, transform, occ['longitude'].values, occ['latitude'].values)
        env = pd.DataFrame(values, columns=band_names, index=occ.index)
        occ_env = pd.concat([occ, env], axis=1).dropna(subset=band_names).reset_index(drop=True)
        print(f"Записей с полными климатическими данными: {len(occ_env)} из {len(occ)}")
        if len(occ_env) == 0:
            raise ValueError("Ни одна точка наблюдения не попала на валидные пиксели климатических слоёв")

        self._save_table(occ_env, self.OCC_ENV_CSV)
        self._save_table(environmental_summary(occ_env, band_names), self.ENV_SUMMARY_CSV)

    def select_variables(self):
        # 3) Отбор переменных
        print("\n-- 3. Отбор переменных")
        occ_env = pd.read_csv(self.OCC_ENV_CSV)
        env_names = [c for c in occ_env.columns if c in BIOCLIM_DESCRIPTIONS]
        cor = correlation_matrix(occ_env[env_names])
        self._save_table(cor, self.CORR_MATRIX_CSV, index=True)

        dropped = find_correlation(cor, self.CORR_CUTOFF)
        auto_set = low_correlation_set(cor, self.CORR_CUTOFF)
        print(f"Сильно коррелирующие (|r| > {self.CORR_CUTOFF}), к удалению: {', '.join(dropped) or 'нет'}")
        print(f"Автоматический набор ({len(auto_set)}): {', '.join(auto_set)}")

        # для модели используется фиксированный набор, автоматический - только для справки
        self.SELECTED_VARS = list(self.SELECTED_VARS) if self.SELECTED_VARS else fixed_feature_list()
        print(f"Переменные для модели ({len(self.SELECTED_VARS)}):")
        for name in self.SELECTED_VARS:
            print(f"  {name:6s} - {BIOCLIM_DESCRIPTIONS.get(name, '')}")

        self._save_table(cor.loc[self.SELECTED_VARS, self.SELECTED_VARS], self.CORR_SELECTED_CSV, index=True)
        self._save_table(environmental_summary(occ_env, self.SELECTED_VARS), self.SELECTED_SUMMARY_CSV)

        final = occ_env[['longitude', 'latitude'] + self.SELECTED_VARS].copy()
        final.insert(0, 'species', self.SPECIES_NAME)
        self._save_table(final, self.FINAL_DATA_CSV)

        subset_stack(self.CROPPED_TIF, self.SELECTED_TIF, self.SELECTED_VARS)
        print(f"Стек выбранных переменных: {self.SELECTED_TIF}")

    def generate_background(self):
        # 4) Фоновые точки
        print("\n-- 4. Генерация фоновых точек")
        stack, _, transform, _, _, band_names = load_environmental_predictors(self.SELECTED_TIF, self.SELECTED_VARS)
        presence = pd.read_csv(self.FINAL_DATA_CSV)

        rng = np.random.default_rng(self.RANDOM_SEED)
        bg = sample_background(stack, transform, band_names,
                               presence['longitude'].values, presence['latitude'].values,
                               self.N_BACKGROUND, rng, min_distance_m=self.BG_BUFFER_M)
        if len(bg) == 0:
            raise ValueError("Не удалось сгенерировать ни одной фоновой точки")
        self._save_table(bg, self.BACKGROUND_CSV)

    def fit_model(self):
        # 5) Обучение и оценка MaxEnt
        print("\n-- 5. Обучение модели MaxEnt")
        model = self._new_model()
        _, _, X_pres, X_bg = self._load_model_data()
        pres_train, pres_test, bg_train, bg_test = self._split(X_pres, X_bg)
        print(f"Обучающая выборка: присутствий {len(pres_train)}, фона {len(bg_train)}")
        print(f"Тестовая выборка: присутствий {len(pres_test)}, фона {len(bg_test)}")

        model.fit(pres_train, bg_train)
        model.save(self.MODEL_FILE)
        print(f"Модель сохранена: {self.MODEL_FILE}")

        eval_train = model.evaluate(pres_train, bg_train)
        eval_test = model.evaluate(pres_test, bg_test)
        print(f"ROC AUC (train): {eval_train['auc']:.3f}, cor: {eval_train['cor']:.3f}")
        print(f"ROC AUC (test): {eval_test['auc']:.3f}, cor: {eval_test['cor']:.3f}")
        print(f"Качество модели: {auc_rating(eval_test['auc'])}")

        evaluation = pd.DataFrame({
            'Dataset': ['Training', 'Testing'],
            'AUC': [eval_train['auc'], eval_test['auc']],
            'Correlation': [eval_train['cor'], eval_test['cor']],
        })
        self._save_table(evaluation, self.EVALUATION_CSV)
        self._save_table(pd.DataFrame([eval_test['thresholds']]), self.THRESHOLDS_CSV)

        print("Прогноз на всю область...")
        self._predict_surface(model)

    def classify_habitat(self):
        # 6) Бинарная карта, площади, страны
        print("\n-- 6. Бинарная классификация и площади местообитаний")
        if is_stale_raster(self.SUITABILITY_TIF):
            print("Карта пригодности отсутствует или пуста, строим заново по сохранённой модели")
            MaxEnt = require_maxent()
            self._predict_surface(MaxEnt.load(self.MODEL_FILE))

        suitability, transform, profile = read_geotiff(self.SUITABILITY_TIF)
        thresholds = pd.read_csv(self.THRESHOLDS_CSV).iloc[0].to_dict()
        self.threshold = choose_threshold(thresholds, suitability)

        binary = binarize(suitability, self.threshold)
        bin_profile = profile.copy()
        bin_profile.update(dtype="uint8", nodata=BINARY_NODATA)
        save_geotiff(self.BINARY_TIF, binary, bin_profile)
        print(f"Бинарная карта сохранена: {self.BINARY_TIF}")

        res_x, res_y = abs(transform.a), abs(transform.e)
        cell_area = cell_area_km2(res_x, res_y, self.LAT_OF_INTEREST, self.KM_PER_DEGREE)
        print(f"Разрешение: {res_x} x {res_y} град., площадь ячейки ~ {cell_area:.2f} км²")

        area = habitat_area(binary, cell_area)
        print(f"Пригодных ячеек: {area['Suitable_Cells']}, непригодных: {area['Unsuitable_Cells']}")
        print(f"Площадь пригодных местообитаний: {area['Suitable_Area_km2']} км² "
              f"({area['Percent_Suitable']}% области)")
        self._save_table(pd.DataFrame([area]), self.HABITAT_AREA_CSV)

        countries_path = fetch_countries(self.COUNTRIES_PATH, self.COUNTRIES_DIR)
        countries = load_countries(countries_path, self.STUDY_COUNTRIES)
        by_country = country_habitat_summary(binary, transform, countries, cell_area)
        print("Пригодные местообитания по странам:")
        print(by_country.to_string(index=False))
        self._save_table(by_country, self.COUNTRY_CSV)

        classes = suitability_classes(suitability, cell_area)
        print(classes.to_string(index=False))
        self._save_table(classes, self.CLASSES_CSV)

    def run_diagnostics(self):
        # 7) Важность переменных, кривые отклика, кросс-валидация
        print("\n-- 7. Диагностика модели")
        MaxEnt = require_maxent()
        model = MaxEnt.load(self.MODEL_FILE)
        presence, _, X_pres, X_bg = self._load_model_data()
        pres_train, pres_test, bg_train, bg_test = self._split(X_pres, X_bg)

        importance = importance_table(model.variable_importance(pres_train, bg_train,
                                                                random_state=self.RANDOM_SEED))
        print("Важность предикторов (вклад %, пермутационная %):")
        for _, row in importance.iterrows():
            print(f"  {row['Variable']:10s} {row['Contribution']:6.2f} {row['Permutation']:6.2f}")
        self._save_table(importance, self.IMPORTANCE_CSV)

        stack, _, _, _, _, band_names = load_environmental_predictors(self.SELECTED_TIF, self.SELECTED_VARS)
        top_vars = list(importance['Variable'][:self.N_RESPONSE_VARS])
        print(f"Кривые отклика: {', '.join(top_vars)}")
        self._save_table(response_curves(model, stack, band_names, top_vars, self.RESPONSE_POINTS), self.RESPONSE_CSV)

        suitability, transform, _ = read_geotiff(self.SUITABILITY_TIF)
        pres_pred = presence_predictions(suitability, transform, presence['longitude'].values, presence['latitude'].values)
        mean_pres = float(np.nanmean(pres_pred))
        print(f"Прогноз в точках присутствия: среднее {mean_pres:.3f}, медиана {np.nanmedian(pres_pred):.3f}")

        print(f"Кросс-валидация ({self.CV_FOLDS} фолдов)...")
        rng = np.random.default_rng(self.RANDOM_SEED)
        cv = cross_validate(X_pres, X_bg, self._new_model, k=self.CV_FOLDS, bg_mult=self.CV_BG_MULT, rng=rng)
        print(cv.to_string(index=False))
        print(f"Средний AUC: {cv['AUC'].mean():.3f} ± {cv['AUC'].std():.3f}")
        print(f"Качество модели по кросс-валидации: {auc_rating(cv['AUC'].mean())}")
        self._save_table(cv, self.CV_CSV)

        evaluation = pd.read_csv(self.EVALUATION_CSV)
        train_auc, test_auc = float(evaluation['AUC'][0]), float(evaluation['AUC'][1])
        top_variable = importance['Variable'][0]
        self._save_table(diagnostic_summary(train_auc, test_auc, cv, top_variable, mean_pres), self.DIAGNOSTIC_CSV)

        thresholds = pd.read_csv(self.THRESHOLDS_CSV).iloc[0].to_dict()
        threshold = choose_threshold(thresholds, suitability)
        sens, spec = sensitivity_specificity(model.predict(pres_test), model.predict(bg_test), threshold)
        table1, table2 = publication_tables(train_auc, test_auc, cv, threshold, sens, spec, importance)
        self._save_table(table1, self.TABLE1_CSV)
        self._save_table(table2, self.TABLE2_CSV)

    def run(self, stage=None):
        """
        Запускает этапы по порядку. Если задан stage - только этот этап
        (входные файлы предыдущих этапов должны уже существовать).

        Остановка на первой ошибке: возвращается словарь со статусом 'terminated'.
        """
        if stage is not None and stage not in self.STAGES:
            raise ValueError(f"Неизвестный этап: {stage}. Доступны: {', '.join(self.STAGES)}")
        stages = [stage] if stage else list(self.STAGES)

        for name in stages:
            try:
                getattr(self, name)()
            except Exception as e:
                print(f"\nОшибка на этапе {name}: {e}")
                traceback.print_exc()
                return {'status': 'terminated', 'stage': name, 'error': str(e)}

        print("\n-- Готово")
        return {'status': 'done', 'stage': stages[-1], 'error': None}


def run_sdm(config=None, stage=None):
    """Создаёт PythonSDM с переопределениями config и запускает этапы."""
    return PythonSDM(config).run(stage)
