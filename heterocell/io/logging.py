"""Run logging helpers.

Structured run records (JSON lines and YAML documents) for stage summaries.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np
import yaml

PathLike = Union[str, Path]


def to_serializable(value: Any) -> Any:
    """Convert numpy scalars and arrays for JSON/YAML output."""
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, np.ndarray):
        return [to_serializable(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value


def log_json(log_path: PathLike, record: Dict[str, Any]) -> None:
    """Append ``record`` as one JSON line."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(to_serializable(record), default=str))
        handle.write("\n")


def log_yaml(
    log_path: PathLike,
    record: Dict[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append ``record`` as a YAML document, or log it when ``logger`` is given."""
    text = yaml.safe_dump(to_serializable(record), sort_keys=False).rstrip("\n")
    if logger is not None:
        logger.info("%s\n---", text)
        return
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(f"{text}\n---\n")
