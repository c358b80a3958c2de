"""Scenario loading and the archive of run results.

Scenario files are YAML (``.yaml``/``.yml``) or JSON.  Every problem found
while reading or validating one is collected into a ``ConfigurationError``
before any simulation state exists.

Results are stored one JSON file per run in the results directory and are
never rewritten once archived.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from fleetsim.errors import ConfigurationError

from .schema import ScenarioDefinition, ScenarioResult

# Characters allowed in an archive filename component.
_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def parse_scenario(data: Any, source: str = "<memory>") -> ScenarioDefinition:
    """Validate an already-decoded scenario document."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: scenario must be a mapping",
                                 [f"top-level value is {type(data).__name__}"])
    try:
        return ScenarioDefinition.model_validate(data)
    except ValidationError as exc:
        problems = [_format_error(e) for e in exc.errors()]
        raise ConfigurationError(f"{source}: invalid scenario", problems) from exc


def load_scenario(path: str | Path) -> ScenarioDefinition:
    """Read and validate a scenario file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Scenario not found: {path}")
    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ConfigurationError(f"{path}: unsupported scenario format '{suffix}'",
                                     ["use .yaml, .yml or .json"])
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"{path}: cannot read scenario", [str(exc)]) from exc
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"{path}: cannot parse scenario", [str(exc)]) from exc
    return parse_scenario(data, str(path))


class ResultArchive:
    """Immutable run records on disk: ``<results_dir>/<scenario>_<run_id>.json``."""

    def __init__(self, results_dir: str | Path) -> None:
        self._dir = Path(results_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    def save(self, result: ScenarioResult) -> Path:
        """Archive a result. Raises FileExistsError rather than overwrite."""
        self._dir.mkdir(parents=True, exist_ok=True)
        stem = _UNSAFE.sub("_", f"{result.scenario_name}_{result.run_id}").lstrip(".")
        path = self._dir / f"{stem}.json"
        if path.exists():
            raise FileExistsError(f"Result already archived: {path}")
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(result.model_dump(mode="json"), f, indent=2)
        os.replace(tmp, path)
        return path

    def list(self, scenario_name: str | None = None) -> list[ScenarioResult]:
        """All archived results, newest first."""
        if not self._dir.is_dir():
            return []
        results = []
        for path in self._dir.glob("*.json"):
            result = self._read(path)
            if result is None:
                continue
            if scenario_name is None or result.scenario_name == scenario_name:
                results.append(result)
        results.sort(key=lambda r: r.started_at, reverse=True)
        return results

    def get(self, run_id: str) -> ScenarioResult | None:
        if not self._dir.is_dir() or _UNSAFE.search(run_id):
            return None
        for path in self._dir.glob(f"*_{run_id}.json"):
            result = self._read(path)
            if result is not None and result.run_id == run_id:
                return result
        return None

    @staticmethod
    def _read(path: Path) -> ScenarioResult | None:
        try:
            with open(path, encoding="utf-8") as f:
                return ScenarioResult.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning(f"Skipping unreadable result {path.name}: {exc}")
            return None
