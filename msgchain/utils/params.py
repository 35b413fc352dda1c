import json
import re
from typing import Any, Dict, Optional

_BRACKETED = [
    re.compile(r"^\s*\[[^\]]*\]\s*$"),
    re.compile(r"^\s*<[^>]*>\s*$"),
    re.compile(r"^\s*\{[^}]*\}\s*$"),
]
# Only short values are read as references to another step so message text survives.
_REFERENCES = [
    re.compile(r"\bfrom\s+(the\s+)?(step|previous|prior|result|lookup)\b", re.IGNORECASE),
    re.compile(r"^\s*(step|result)\s*\d+\b", re.IGNORECASE),
]
_REFERENCE_MAX_WORDS = 6
_PLACEHOLDER_WORDS = {"placeholder", "unknown", "tbd", "null", "none", "undefined", "n/a"}

_MISSING = object()


def is_placeholder(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    if not text:
        return True
    if text.lower() in _PLACEHOLDER_WORDS:
        return True
    if any(pattern.match(text) for pattern in _BRACKETED):
        return True
    if len(text.split()) > _REFERENCE_MAX_WORDS:
        return False
    return any(pattern.search(text) for pattern in _REFERENCES)


def is_concrete(value: Any) -> bool:
    if value is None:
        return False
    return not is_placeholder(value)


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path such as ``contacts.0.id`` against nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def fingerprint(operation: str, parameters: Optional[Dict[str, Any]]) -> str:
    payload = {"operation": operation, "parameters": parameters or {}}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
