import os
import sys

# эти три строчки нужны для возможности подключить import sdm_pipeline без установки
current_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.abspath(os.path.join(current_dir, '..'))
sys.path.insert(0, project_root)

import sdm_pipeline


CONFIG = {
    'SPECIES_NAME': 'Capra sibirica',
    'STUDY_EXTENT': (60.0, 25.0, 105.0, 45.0), # min_lon, min_lat, max_lon, max_lat
    'WORK_DIR': 'SDM_Himalayan_Ibex',
    'RANDOM_SEED': 123,

    # параметры фоновых точек
    'N_BACKGROUND': 10000,
    'BG_BUFFER_M': 10000,
}

result = sdm_pipeline.run_sdm(CONFIG)
print(result)
