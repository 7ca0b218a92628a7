"""Maps backend avatar records (any shape, any age) onto ``AvatarState``."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ..models.normalization import is_valid_url, normalize_status
from ..models.schemas import (
    OPTIMIZED_SLOTS,
    THUMBNAIL_SLOTS,
    AvatarConfiguration,
    AvatarCustomizations,
    AvatarError,
    AvatarOptimizedAssets,
    AvatarState,
    AvatarThumbnails,
)
from .errors import InvalidResponse

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)


def generate_cache_key(rpm_id: Optional[str], version: int) -> Optional[str]:
    if not rpm_id:
        return None
    return f"avatar_{rpm_id}_v{version}"


def _url(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if is_valid_url(value):
        return value.strip()
    logger.debug("Dropping invalid asset URL from backend record: %r", value)
    return None


def _datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return _DATETIME.validate_python(value)
    except ValidationError:
        logger.debug("Unparseable timestamp in backend record: %r", value)
        return None


def _version(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    try:
        version = int(value)
    except (TypeError, ValueError, OverflowError):
        # OverflowError: JSON numbers like 1e400 decode to inf.
        return 1
    return version if version >= 1 else 1


def _string(value: Any) -> Optional[str]:
    if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
        return str(value).strip()
    return None


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, Mapping) else {}


def map_avatar_configuration(config: Any) -> AvatarConfiguration:
    if not isinstance(config, Mapping):
        return AvatarConfiguration()
    values: Dict[str, Any] = {}
    for field_name in AvatarConfiguration.model_fields:
        value = config.get(to_camel(field_name), config.get(field_name))
        if value is None:
            continue
        if field_name in {"gender", "body_type", "quality_level"} or isinstance(value, str):
            values[field_name] = value
    return AvatarConfiguration(**values)


def map_avatar_error(error: Any) -> Optional[AvatarError]:
    if not isinstance(error, Mapping):
        if isinstance(error, str) and error.strip():
            return AvatarError(message=error.strip())
        return None
    fallback_options = error.get("fallbackOptions")
    extra: Dict[str, Any] = {}
    timestamp = _datetime(error.get("timestamp"))
    if timestamp is not None:
        extra["timestamp"] = timestamp
    return AvatarError(
        type=_string(error.get("type")) or "UNKNOWN_ERROR",
        code=_string(error.get("code")) or "UNKNOWN",
        message=_string(error.get("message")) or "An unknown error occurred",
        user_message=_string(error.get("userMessage")) or "Something went wrong with your avatar",
        persian_message=_string(error.get("persianMessage")),
        step=_string(error.get("step")),
        rpm_id=_string(error.get("rpmId")),
        details=dict(error["details"]) if isinstance(error.get("details"), Mapping) else None,
        retryable=error.get("retryable") is not False,
        suggested_action=_string(error.get("suggestedAction")),
        fallback_options=[str(o) for o in fallback_options] if isinstance(fallback_options, list) else None,
        **extra,
    )


def _customizations(value: Any) -> Optional[AvatarCustomizations]:
    if not isinstance(value, Mapping):
        return None
    try:
        return AvatarCustomizations.model_validate(dict(value))
    except ValidationError:
        logger.debug("Ignoring customizations that do not match the current schema")
        return None


def map_avatar_response(raw: Any) -> AvatarState:
    """Build a fully-defaulted ``AvatarState`` from a backend record.

    Only a missing response is an error; every absent or malformed field is
    replaced by its default because backend schemas evolve independently.
    """

    if raw is None:
        raise InvalidResponse("Avatar response is null or undefined", step="map")

    if hasattr(raw, "model_dump"):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, Mapping):
        logger.warning("Avatar response is a %s, not an object; using defaults", type(raw).__name__)
        raw = {}

    nested = raw.get("avatar")
    if isinstance(nested, Mapping) and "rpmId" not in raw:
        raw = nested

    thumbnails = _section(raw, "thumbnails")
    optimized = _section(raw, "optimized")
    rpm_id = _string(raw.get("rpmId"))
    version = _version(raw.get("version", 1))
    metadata = raw.get("processingMetadata")

    return AvatarState(
        rpm_id=rpm_id,
        rpm_url=_url(raw.get("rpmUrl")),
        version=version,
        status=normalize_status(raw.get("status")),
        last_updated=_datetime(raw.get("lastUpdated")),
        thumbnails=AvatarThumbnails(
            **{slot: _url(thumbnails.get(slot)) for slot in THUMBNAIL_SLOTS}
        ),
        optimized=AvatarOptimizedAssets(
            **{
                slot: _url(optimized.get(to_camel(slot)))
                for slot in OPTIMIZED_SLOTS
            }
        ),
        glb=_url(raw.get("glb")),
        usdz=_url(raw.get("usdz")),
        fbx=_url(raw.get("fbx")),
        configuration=map_avatar_configuration(raw.get("configuration")),
        customizations=_customizations(raw.get("customizations")),
        processing_metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        error=map_avatar_error(raw.get("error")),
        cache_key=generate_cache_key(rpm_id, version),
        expires_at=_datetime(raw.get("expiresAt")),
    )
