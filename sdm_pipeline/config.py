# sdm_pipeline/config.py

# Переменные для модели: выбраны вручную по биологической значимости для вида,
# автоматический отбор по корреляции только для диагностики.
FIXED_FEATURES = ('bio1', 'bio2', 'bio3', 'bio4', 'bio12', 'bio15', 'bio18', 'bio19')


# Параметры прогона по умолчанию. PythonSDM копирует каждый ключ в атрибут экземпляра,
# поэтому любой ключ можно переопределить словарём или JSON-файлом (см. cli/sdm_cli.py).
DEFAULT_CONFIG = {
    # вид и область моделирования
    'SPECIES_NAME': 'Capra sibirica',
    'STUDY_EXTENT': (60.0, 25.0, 105.0, 45.0),  # min_lon, min_lat, max_lon, max_lat
    'STUDY_COUNTRIES': ['Pakistan', 'Afghanistan', 'India', 'China', 'Nepal',
                        'Bhutan', 'Tajikistan', 'Kyrgyzstan', 'Kazakhstan',
                        'Mongolia', 'Uzbekistan'],

    # рабочая папка, от неё строятся все пути
    'WORK_DIR': 'SDM_Himalayan_Ibex',

    # GBIF
    'GBIF_LIMIT': 5000,
    'GBIF_PAGE_SIZE': 300,
    'MANUAL_OCC_CSV': '',  # если пусто - data/raw/gbif_manual_download.csv
    'MAX_UNCERTAINTY_M': 10000,

    # WorldClim
    'WORLDCLIM_VAR': 'bio',
    'WORLDCLIM_RES': 2.5,
    'WORLDCLIM_URL': 'https://geodata.ucdavis.edu/climate/worldclim/2_1/base',

    # отбор переменных
    'CORR_CUTOFF': 0.7,
    'SELECTED_VARS': list(FIXED_FEATURES),

    # фоновые точки
    'N_BACKGROUND': 10000,
    'BG_BUFFER_M': 10000,

    # модель
    'RANDOM_SEED': 123,
    'TEST_SIZE': 0.2,
    'FEATURE_TYPES': ['linear', 'quadratic', 'hinge'],
    'BETA_MULTIPLIER': 1.0,
    'MAXENT_TRANSFORM': 'logistic',

    # классификация и площади
    'LAT_OF_INTEREST': 35.0,
    'KM_PER_DEGREE': 111.0,
    'COUNTRIES_PATH': 'https://naturalearth.s3.amazonaws.com/50m_cultural/ne_50m_admin_0_countries.zip',

    # диагностика
    'CV_FOLDS': 5,
    'CV_BG_MULT': 20,
    'N_RESPONSE_VARS': 4,
    'RESPONSE_POINTS': 100,
}


# Расшифровка биоклиматических переменных WorldClim
BIOCLIM_DESCRIPTIONS = {
    'bio1': 'Annual Mean Temperature',
    'bio2': 'Mean Diurnal Range',
    'bio3': 'Isothermality',
    'bio4': 'Temperature Seasonality',
    'bio5': 'Max Temperature of Warmest Month',
    'bio6': 'Min Temperature of Coldest Month',
    'bio7': 'Temperature Annual Range',
    'bio8': 'Mean Temperature of Wettest Quarter',
    'bio9': 'Mean Temperature of Driest Quarter',
    'bio10': 'Mean Temperature of Warmest Quarter',
    'bio11': 'Mean Temperature of Coldest Quarter',
    'bio12': 'Annual Precipitation',
    'bio13': 'Precipitation of Wettest Month',
    'bio14': 'Precipitation of Driest Month',
    'bio15': 'Precipitation Seasonality',
    'bio16': 'Precipitation of Wettest Quarter',
    'bio17': 'Precipitation of Driest Quarter',
    'bio18': 'Precipitation of Warmest Quarter',
    'bio19': 'Precipitation of Coldest Quarter',
}

BIOCLIM_NAMES = [f"bio{i}" for i in range(1, 20)]


def make_config(overrides=None):
    """Возвращает копию DEFAULT_CONFIG с применёнными переопределениями."""
    config = {k: (list(v) if isinstance(v, list) else v) for k, v in DEFAULT_CONFIG.items()}
    if overrides:
        unknown = set(overrides) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError(f"Неизвестные параметры конфигурации: {', '.join(sorted(unknown))}")
        config.update(overrides)
    config['STUDY_EXTENT'] = tuple(float(v) for v in config['STUDY_EXTENT'])
    return config
