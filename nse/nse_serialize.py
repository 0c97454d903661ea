from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional
import collections.abc

import yaml
import tomllib

from nse.nse_datatypes import Symbol, Call, Closure, Scope
from nse.nse_printer import render


_EXTENSIONS = {
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.toml': 'toml',
}


# --------------------------
# Helpers
# --------------------------

def _to_builtin(obj: Any) -> Any:
    # Language objects and closures are written as their source text
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    if isinstance(obj, (Symbol, Call, Closure, Scope)):
        return render(obj)
    return obj


def _records_from(value: Any) -> Any:
    """TOML documents are tables; a single array-of-tables entry is taken as the records."""
    if isinstance(value, dict) and len(value) == 1:
        (only,) = value.values()
        if isinstance(only, list):
            return only
    return value


def detect_format(path: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml'.
    Uses the file extension first; falls back to simple data sniffing if provided.
    """
    if path:
        fmt = _EXTENSIONS.get(Path(path).suffix.lower())
        if fmt:
            return fmt
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        # YAML is a superset of most remaining inputs
        return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Any:
    """
    Convert text to native Python structures.
    Supported fmt: 'json', 'yaml', 'toml'. If fmt is None, sniffs the data.
    """
    text = data.decode('utf-8') if isinstance(data, (bytes, bytearray)) else str(data)
    f = (fmt or detect_format(data_hint=text) or '').lower()
    if f == 'json':
        return json.loads(text)
    if f == 'yaml':
        return yaml.safe_load(text)
    if f == 'toml':
        return tomllib.loads(text)
    raise ValueError(f"Unsupported data format: {fmt!r}")


def load_records(path_or_text: str | Path, fmt: Optional[str] = None) -> Any:
    """
    Load data for binding into a script: a path to a .json/.yaml/.toml
    file, or the text itself. TOML tables holding one array of tables
    yield that array.
    """
    path = Path(path_or_text) if isinstance(path_or_text, Path) or '\n' not in str(path_or_text) else None
    try:
        is_file = path is not None and path.is_file()
    except OSError:
        is_file = False
    if is_file:
        text = path.read_text(encoding='utf-8')
        f = fmt or detect_format(str(path), text)
    else:
        text = str(path_or_text)
        f = fmt or detect_format(data_hint=text)
    value = deserialize(text, fmt=f)
    if f == 'toml':
        return _records_from(value)
    return value


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """
    Convert a native value into a textual representation.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "load_records",
]
