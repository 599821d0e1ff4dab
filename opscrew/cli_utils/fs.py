"""Filesystem helpers for locating definition files."""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Iterable, Set

DEFINITION_SUFFIXES = (".yaml", ".yml")


def _load_gitignore_patterns(search_path: Path) -> Set[str]:
    """Collect ignore patterns from .gitignore files in ``search_path`` and its parents."""
    patterns: Set[str] = {
        ".git/",
        ".venv/",
        "venv/",
        "node_modules/",
        "build/",
        "dist/",
        "*.egg-info/",
        ".github/",
    }

    current_path = search_path
    while current_path != current_path.parent:
        gitignore_file = current_path / ".gitignore"
        if gitignore_file.is_file():
            try:
                lines = gitignore_file.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                lines = []
            patterns.update(
                line.strip()
                for line in lines
                if line.strip() and not line.strip().startswith("#")
            )
        current_path = current_path.parent

    return patterns


def _should_ignore_path(path: Path, patterns: Set[str], base_path: Path) -> bool:
    try:
        relative_path = path.relative_to(base_path)
    except ValueError:
        return False

    path_str = relative_path.as_posix()
    parts = relative_path.parts
    for pattern in patterns:
        if pattern.endswith("/"):
            directory = pattern[:-1]
            # only parent directories can match a directory pattern
            if any(fnmatch.fnmatch(part, directory) for part in parts[:-1]):
                return True
        elif fnmatch.fnmatch(path.name, pattern) or fnmatch.fnmatch(path_str, pattern):
            return True
    return False


def _iter_definition_files(
    search_path: Path, respect_gitignore: bool = True
) -> Iterable[Path]:
    """Yield YAML definition files within ``search_path``, sorted by path."""
    if search_path.is_file():
        if search_path.suffix in DEFINITION_SUFFIXES:
            yield search_path
        return

    patterns: Set[str] = set()
    if respect_gitignore:
        patterns = _load_gitignore_patterns(search_path)

    candidates = sorted(
        p for suffix in DEFINITION_SUFFIXES for p in search_path.rglob(f"*{suffix}")
    )
    for path in candidates:
        if respect_gitignore and _should_ignore_path(path, patterns, search_path):
            continue
        if path.is_file():
            yield path
