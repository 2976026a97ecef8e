"""Property-list helpers"""

import plistlib
from datetime import datetime
from pathlib import Path
from typing import Any, List

from .errors import ReleaseError


def load_plist(path: Path) -> Any:
    try:
        with open(path, "rb") as f:
            return plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        raise ReleaseError(f"Failed to read property list {path}: {e}") from e


def loads_plist(data: str) -> Any:
    try:
        return plistlib.loads(data.encode("utf-8"))
    except (plistlib.InvalidFileException, ValueError) as e:
        raise ReleaseError(f"Failed to parse property list: {e}") from e


def dump_plist(value: Any, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(value, f)
    return path


def _kind(value: Any) -> str:
    """Tag a plist value; bool is checked before int since bool is an int"""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (bytes, bytearray)):
        return "data"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, dict):
        return "dict"
    if isinstance(value, (list, tuple)):
        return "array"
    raise ReleaseError(f"Unsupported property list value: {type(value).__name__}")


def plist_diff(expected: Any, actual: Any, path: str = "") -> List[str]:
    """List the key paths at which two plist values differ"""
    kind = _kind(expected)
    label = path or "<root>"
    if kind != _kind(actual):
        return [f"{label}: expected {kind}, found {_kind(actual)}"]

    if kind == "dict":
        differences: List[str] = []
        for key in sorted(set(expected) | set(actual)):
            child = f"{path}.{key}" if path else key
            if key not in actual:
                differences.append(f"{child}: missing")
            elif key not in expected:
                differences.append(f"{child}: unexpected")
            else:
                differences.extend(plist_diff(expected[key], actual[key], child))
        return differences

    if kind == "array":
        if len(expected) != len(actual):
            return [f"{label}: expected {len(expected)} items, found {len(actual)}"]
        differences = []
        for index, (left, right) in enumerate(zip(expected, actual)):
            differences.extend(plist_diff(left, right, f"{path}[{index}]"))
        return differences

    if expected != actual:
        return [f"{label}: expected {expected!r}, found {actual!r}"]
    return []
