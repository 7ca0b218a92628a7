"""Structural integrity check for avatar records and requests."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping

from ..models.normalization import is_valid_url
from ..models.schemas import (
    AvatarBodyType,
    AvatarGender,
    AvatarQualityLevel,
    AvatarStatus,
)

_GENDERS = {member.value for member in AvatarGender}
_BODY_TYPES = {member.value for member in AvatarBodyType}
_QUALITY_LEVELS = {member.value for member in AvatarQualityLevel}
_STATUSES = {member.value for member in AvatarStatus}

_TOP_LEVEL_URLS = ("rpmUrl", "glb", "usdz", "fbx")
_NESTED_URLS = ("thumbnails", "optimized")


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _as_mapping(candidate: Any) -> Mapping[str, Any]:
    if hasattr(candidate, "model_dump"):
        return candidate.model_dump(by_alias=True, mode="json")
    if isinstance(candidate, Mapping):
        return candidate
    return {}


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def validate_avatar_data(candidate: Any) -> ValidationResult:
    """Check identity, model reference, enum membership and URL syntax.

    Accepts an ``AvatarState``, an ``UpdateAvatarRequest`` or a raw mapping in
    wire (camelCase) form. Never raises.
    """

    errors: List[str] = []
    try:
        data = _as_mapping(candidate)
    except Exception as exc:  # pragma: no cover - model_dump of foreign objects
        return ValidationResult(False, [f"Unreadable avatar data: {exc}"])

    if not data:
        return ValidationResult(False, ["Avatar data is empty or not an object"])

    if not data.get("rpmId") and not data.get("fallback"):
        errors.append("Missing RPM ID or fallback indicator")

    if not data.get("rpmUrl") and not data.get("glb"):
        errors.append("Missing avatar URL or GLB file")

    configuration = data.get("configuration")
    if isinstance(configuration, Mapping):
        if _enum_value(configuration.get("gender")) not in _GENDERS:
            errors.append("Invalid gender configuration")
        if _enum_value(configuration.get("bodyType")) not in _BODY_TYPES:
            errors.append("Invalid body type configuration")
        quality = configuration.get("qualityLevel")
        if quality is not None and _enum_value(quality) not in _QUALITY_LEVELS:
            errors.append("Invalid quality level configuration")
    elif configuration is not None:
        errors.append("Configuration must be an object")

    status = data.get("status")
    if status is not None and _enum_value(status) not in _STATUSES:
        errors.append("Invalid avatar status")

    for key in _TOP_LEVEL_URLS:
        value = data.get(key)
        if value and not is_valid_url(value):
            errors.append(f"Invalid {key} URL format")

    for section in _NESTED_URLS:
        urls = data.get(section)
        if not isinstance(urls, Mapping):
            continue
        for slot, value in urls.items():
            if value and not is_valid_url(value):
                errors.append(f"Invalid {section}.{slot} URL format")

    return ValidationResult(is_valid=not errors, errors=errors)
