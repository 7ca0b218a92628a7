"""Lookup tables that fold provider vocabulary into the internal enums."""
from __future__ import annotations

from typing import Any, Dict
from urllib.parse import urlparse

GENDER_ALIASES: Dict[str, str] = {
    "male": "male",
    "m": "male",
    "man": "male",
    "masculine": "male",
    "female": "female",
    "f": "female",
    "woman": "female",
    "feminine": "female",
    "non-binary": "non-binary",
    "nonbinary": "non-binary",
    "non_binary": "non-binary",
    "nb": "non-binary",
    "custom": "custom",
}
DEFAULT_GENDER = "male"

BODY_TYPE_ALIASES: Dict[str, str] = {
    "fullbody": "fullbody",
    "full": "fullbody",
    "complete": "fullbody",
    "halfbody": "halfbody",
    "half": "halfbody",
    "bust": "halfbody",
    "head": "head",
    "headonly": "head",
}
# Half body keeps mobile rendering cheap.
DEFAULT_BODY_TYPE = "halfbody"

QUALITY_ALIASES: Dict[str, str] = {
    "low": "low",
    "basic": "low",
    "medium": "medium",
    "standard": "medium",
    "high": "high",
    "premium": "high",
    "ultra": "ultra",
    "maximum": "ultra",
}
DEFAULT_QUALITY = "medium"

STATUS_ALIASES: Dict[str, str] = {
    "none": "none",
    "pending": "pending",
    "queued": "pending",
    "processing": "processing",
    "creating": "processing",
    "updating": "processing",
    "optimizing": "processing",
    "complete": "complete",
    "completed": "complete",
    "succeeded": "complete",
    "done": "complete",
    "error": "error",
    "failed": "error",
}
DEFAULT_STATUS = "none"


def _lookup(table: Dict[str, str], value: Any, default: str) -> str:
    if hasattr(value, "value"):
        value = value.value
    if not isinstance(value, str):
        return default
    return table.get(value.strip().lower(), default)


def normalize_gender(value: Any) -> str:
    return _lookup(GENDER_ALIASES, value, DEFAULT_GENDER)


def normalize_body_type(value: Any) -> str:
    return _lookup(BODY_TYPE_ALIASES, value, DEFAULT_BODY_TYPE)


def normalize_quality(value: Any) -> str:
    return _lookup(QUALITY_ALIASES, value, DEFAULT_QUALITY)


def normalize_status(value: Any) -> str:
    return _lookup(STATUS_ALIASES, value, DEFAULT_STATUS)


def is_valid_url(value: Any) -> bool:
    """Return True when ``value`` is an absolute URL with a scheme and host."""

    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)
