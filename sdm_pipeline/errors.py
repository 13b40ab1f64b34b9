# sdm_pipeline/errors.py


class OccurrenceDownloadError(RuntimeError):
    """Не удалось получить ни одного наблюдения вида (сеть, API или пустой ответ)."""


class MaxentUnavailableError(RuntimeError):
    """Реализация MaxEnt недоступна в окружении."""
