# sdm_pipeline/__init__.py

from sdm_pipeline.sdm import PythonSDM, run_sdm
from sdm_pipeline.config import DEFAULT_CONFIG, make_config
from sdm_pipeline.errors import OccurrenceDownloadError, MaxentUnavailableError

__version__ = "0.1.0" # Указываем версию библиотеки
