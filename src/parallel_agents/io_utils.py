"""Wrappers for text, JSON and YAML file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
from io import TextIOWrapper
from pathlib import Path
from typing import Any

import yaml

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding, creating parent directories."""
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8", **kwargs)


def open_text(
    path: PathLike,
    mode: str = "r",
    *,
    encoding: str = "utf-8",
    errors: str = "strict",
    **kwargs: Any,
) -> TextIOWrapper:
    """Open path for text I/O with UTF-8 by default. Use for append/write (e.g. log files)."""
    return open(path, mode, encoding=encoding, errors=errors, **kwargs)


def read_yaml(path: PathLike) -> Any:
    """Parse a YAML document. Raises ``yaml.YAMLError`` on malformed input."""
    return yaml.safe_load(read_text(path))


def write_yaml(path: PathLike, data: Any) -> None:
    write_text(path, yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


def write_json(path: PathLike, data: Any) -> None:
    write_text(path, json.dumps(data, indent=2) + "\n")
