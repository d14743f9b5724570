"""Module for comparing deployed and desired release state.

Comparison is structural: mappings are compared independent of key order,
while scalar types must match exactly (`1`, `1.0`, `True` and `"1"` are all
different values).
"""

import difflib
from typing import Any

import yaml


_TRUNCATE = "[Diff truncated by helm-sync]"
_DEFAULT_LIMIT_BYTES = 10000


def structurally_equal(a: Any, b: Any) -> bool:
    """Return True if both values have the same structure, types and content."""
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        if a.keys() != b.keys():
            return False
        return all(structurally_equal(a[key], b[key]) for key in a)
    if isinstance(a, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(structurally_equal(x, y) for x, y in zip(a, b))
    return bool(a == b)


def _dump(obj: Any) -> list[str]:
    return yaml.safe_dump(obj, sort_keys=True, default_flow_style=False).splitlines(
        keepends=True
    )


def render_diff(
    a: Any,
    b: Any,
    fromfile: str = "current",
    tofile: str = "desired",
    limit_bytes: int = _DEFAULT_LIMIT_BYTES,
) -> str:
    """Render a unified diff of the YAML form of two values."""
    size = 0
    lines = []
    for line in difflib.unified_diff(
        _dump(a), _dump(b), fromfile=fromfile, tofile=tofile
    ):
        size += len(line)
        if limit_bytes and size > limit_bytes:
            lines.append(_TRUNCATE + "\n")
            break
        lines.append(line)
    return "".join(lines)
