from __future__ import annotations

import csv
import glob
import json
from pathlib import Path
from typing import Any

CHOICE_PROMPT_TEMPLATE = (
    "The following is a multiple choice question. "
    "Answer with the letter of the correct option.\n\n"
    "{question}\n"
    "A. {a}\n"
    "B. {b}\n"
    "C. {c}\n"
    "D. {d}\n"
    "Answer:"
)

# question, A, B, C, D; a trailing answer column is allowed and ignored.
CSV_REQUIRED_COLUMNS = 5


class DatasetError(ValueError):
    pass


def build_choice_prompt(question: str, a: str, b: str, c: str, d: str) -> str:
    return CHOICE_PROMPT_TEMPLATE.format(question=question, a=a, b=b, c=c, d=d)


def load_prompts_from_json(dataset_path: Path) -> list[str]:
    """Load a JSON array of prompt strings."""
    try:
        with dataset_path.open("r", encoding="utf-8") as f:
            parsed: Any = json.load(f)
    except OSError as exc:
        raise DatasetError(f"Cannot read dataset {dataset_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DatasetError(f"Invalid JSON in {dataset_path}: {exc}") from exc

    if not isinstance(parsed, list):
        raise DatasetError(f"Expected a JSON array of strings in {dataset_path}")

    prompts: list[str] = []
    for index, item in enumerate(parsed):
        if not isinstance(item, str):
            raise DatasetError(
                f"Entry {index} in {dataset_path} is {type(item).__name__}, expected string"
            )
        prompts.append(item)
    if not prompts:
        raise DatasetError(f"No prompts found in {dataset_path}")
    return prompts


def _prompts_from_csv_file(csv_path: Path) -> list[str]:
    prompts: list[str] = []
    with csv_path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        for line_number, row in enumerate(reader, start=1):
            if not row:
                continue
            if len(row) < CSV_REQUIRED_COLUMNS:
                raise DatasetError(
                    f"Malformed record at line {line_number} in {csv_path}: "
                    f"expected at least {CSV_REQUIRED_COLUMNS} columns, got {len(row)}"
                )
            question, a, b, c, d = row[:CSV_REQUIRED_COLUMNS]
            prompts.append(build_choice_prompt(question, a, b, c, d))
    return prompts


def load_prompts_from_csv_glob(pattern: str) -> list[str]:
    """Build multiple-choice prompts from every CSV file matching ``pattern``.

    Files are read in sorted path order so a given pattern always yields the
    same prompt sequence.
    """
    paths = sorted(Path(path) for path in glob.glob(pattern, recursive=True))
    paths = [path for path in paths if path.is_file()]
    if not paths:
        raise DatasetError(f"No CSV files match {pattern}")

    prompts: list[str] = []
    for csv_path in paths:
        try:
            prompts.extend(_prompts_from_csv_file(csv_path))
        except OSError as exc:
            raise DatasetError(f"Cannot read dataset {csv_path}: {exc}") from exc
        except csv.Error as exc:
            raise DatasetError(f"Invalid CSV in {csv_path}: {exc}") from exc
    if not prompts:
        raise DatasetError(f"No prompts found in files matching {pattern}")
    return prompts
