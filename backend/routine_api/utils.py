# ---------------------------------------------------------------------------
# utils.py
#
# Shared utility helpers.
#
# Small, dependency-light helpers used across the API:
# - UTC ISO-8601 timestamps for envelopes and the health check
# - Redaction of routine parameter values before they reach a log line
# - Flattening of multi-value query strings
# ---------------------------------------------------------------------------

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Tuple

REDACTED = "***"


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a `Z` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def redact_parameters(parameters: Mapping[str, Any]) -> dict:
    """Keep parameter names and value types; drop the values themselves."""
    return {
        name: (None if value is None else f"{REDACTED}<{type(value).__name__}>")
        for name, value in parameters.items()
    }


def multi_items_to_dict(items: Iterable[Tuple[str, Any]]) -> dict:
    """Collapse (key, value) pairs; repeated keys become a list in arrival order."""
    out: dict = {}
    for key, value in items:
        if key not in out:
            out[key] = value
        elif isinstance(out[key], list):
            out[key].append(value)
        else:
            out[key] = [out[key], value]
    return out
