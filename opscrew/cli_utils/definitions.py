"""Load workflow and agent definitions from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from pydantic import ValidationError

from ..models import Agent, Workflow

DefinitionError = Tuple[Path, str]


def _read_documents(path: Path, key: str) -> List[Dict[str, Any]]:
    """Return the mappings in ``path``.

    A file may hold one definition, a list of definitions, or a mapping with
    the definitions under ``key`` (``workflows`` or ``agents``).
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return []
    if isinstance(data, dict) and key in data:
        data = data[key]
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return data
    raise ValueError(f"expected a mapping or a list of mappings under '{key}'")


def _load(paths, key: str, model):
    loaded = []
    errors: List[DefinitionError] = []
    for path in paths:
        try:
            documents = _read_documents(path, key)
        except (OSError, yaml.YAMLError, ValueError) as e:
            errors.append((path, str(e)))
            continue
        for document in documents:
            try:
                loaded.append((path, model.model_validate(document)))
            except ValidationError as e:
                errors.append((path, str(e)))
    return loaded, errors


def load_workflows(paths) -> Tuple[List[Tuple[Path, Workflow]], List[DefinitionError]]:
    return _load(paths, "workflows", Workflow)


def load_agents(paths) -> Tuple[List[Tuple[Path, Agent]], List[DefinitionError]]:
    return _load(paths, "agents", Agent)


def _format_definition_path(path: Path, search_path: Path) -> str:
    resolved_path = path.resolve()
    candidate_bases = []
    if search_path.is_dir():
        candidate_bases.append(search_path.resolve())
    else:
        candidate_bases.append(search_path.parent.resolve())
    candidate_bases.append(Path.cwd())

    for base in candidate_bases:
        try:
            rel = resolved_path.relative_to(base)
            return f"./{rel}"
        except ValueError:
            continue
    return str(path)
