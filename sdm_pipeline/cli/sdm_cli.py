# sdm_pipeline/cli/sdm_cli.py

import sys
import json
import argparse

from sdm_pipeline.sdm import PythonSDM


def build_parser():
    ap = argparse.ArgumentParser(description="Моделирование ареала вида (MaxEnt) по данным GBIF и WorldClim")
    ap.add_argument("--config", help="JSON-файл с переопределениями параметров (ключи как в DEFAULT_CONFIG)")
    ap.add_argument("--work-dir", help="Рабочая папка для данных и результатов")
    ap.add_argument("--species", help="Научное название вида")
    ap.add_argument("--seed", type=int, help="Seed для всех случайных шагов")
    ap.add_argument("--stage", choices=PythonSDM.STAGES, help="Запустить только один этап")
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.config:
        with open(args.config, 'r', encoding='utf-8') as f:
            overrides.update(json.load(f))
    if args.work_dir:
        overrides['WORK_DIR'] = args.work_dir
    if args.species:
        overrides['SPECIES_NAME'] = args.species
    if args.seed is not None:
        overrides['RANDOM_SEED'] = args.seed

    try:
        sdm = PythonSDM(overrides)
    except ValueError as e:
        print(f"Ошибка конфигурации: {e}", file=sys.stderr)
        return 1

    result = sdm.run(args.stage)
    if result['status'] != 'done':
        print(f"Прогон остановлен на этапе {result['stage']}: {result['error']}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
