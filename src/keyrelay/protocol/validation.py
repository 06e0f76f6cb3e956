from __future__ import annotations
import json
from typing import Any, Dict
from .constants import MAX_MSG_BYTES, MAX_JSON_DEPTH, MAX_JSON_KEYS


def _nesting(s: str) -> int:
    """Deepest bracket nesting in ``s``, skipping over string literals."""
    depth = deepest = 0
    in_str = escaped = False
    for ch in s:
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
        elif ch == '"':
            in_str = True
        elif ch in "[{":
            depth += 1
            if depth > deepest:
                deepest = depth
        elif ch in "]}":
            depth -= 1
    return deepest


def _limit_keys(pairs):
    if len(pairs) > MAX_JSON_KEYS:
        raise ValueError("too many JSON keys")
    return dict(pairs)


def bounded_json_loads(s: str, max_bytes: int = MAX_MSG_BYTES) -> Dict[str, Any]:
    """Parse one envelope object, refusing oversized, wide or deep input.

    Every failure surfaces as ``ValueError`` so callers have one thing to catch.
    """
    if len(s) > max_bytes:
        raise ValueError("message too large")
    # the top-level object counts as one level
    if _nesting(s) > MAX_JSON_DEPTH + 1:
        raise ValueError("JSON nesting too deep")
    try:
        parsed = json.loads(s, object_pairs_hook=_limit_keys)
    except RecursionError as e:
        raise ValueError("JSON nesting too deep") from e
    if not isinstance(parsed, dict):
        raise ValueError("envelope must be a JSON object")
    return parsed


def json_dumps_sorted(o: Any) -> str:
    return json.dumps(o, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
