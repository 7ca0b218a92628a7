"""Turns a provider "avatar exported" envelope into an ``UpdateAvatarRequest``."""
from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from ..models.normalization import normalize_body_type, normalize_gender, normalize_quality
from ..models.schemas import (
    AvatarConfiguration,
    AvatarCustomizations,
    AvatarProcessingPreferences,
    AvatarRequestMetadata,
    BodyCustomization,
    FaceCustomization,
    HairCustomization,
    OutfitCustomization,
    UpdateAvatarRequest,
)
from .errors import MalformedPayload
from .message_channel import EnvelopeType, ParsedEnvelope

logger = logging.getLogger(__name__)

MORPH_TARGETS_KEY = "morphTargets"
# Needed by the talking-head renderer for visemes and blinking.
MORPH_TARGETS_BLOCK = (
    "morphTargets=ARKit,Oculus+Visemes,mouthOpen,mouthSmile,eyesClosed,eyesLookUp,eyesLookDown"
    "&textureSizeLimit=1024&textureFormat=png"
)


def process_model_url(url: str) -> str:
    """Append the morph-target parameter block unless it is already present."""

    if not url:
        return ""
    try:
        existing = parse_qs(urlparse(url).query, keep_blank_values=True)
    except ValueError:
        existing = {}
    if MORPH_TARGETS_KEY in existing or f"{MORPH_TARGETS_KEY}=" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{MORPH_TARGETS_BLOCK}"


def _as_assets(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [asset for asset in value if isinstance(asset, dict)]


def _matches(asset: Dict[str, Any], *tags: str) -> bool:
    for key in ("type", "category"):
        tag = asset.get(key)
        if isinstance(tag, str) and tag.strip().lower() in tags:
            return True
    return False


def extract_asset_value(assets: List[Dict[str, Any]], tag: str, prop: str) -> Optional[str]:
    """Named property of the first asset tagged ``tag``, falling back to its name."""

    for asset in assets:
        if not _matches(asset, tag):
            continue
        for key in (prop, "name"):
            value = asset.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    return None


def extract_facial_features(assets: List[Dict[str, Any]]) -> Dict[str, float]:
    features: Dict[str, float] = {}
    for asset in assets:
        if not _matches(asset, "face", "facial"):
            continue
        metadata = asset.get("metadata")
        raw = metadata.get("features") if isinstance(metadata, dict) else None
        if not isinstance(raw, dict):
            continue
        for name, value in raw.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                features[str(name)] = float(value)
    return features


def extract_accessories(assets: List[Dict[str, Any]]) -> List[str]:
    accessories: List[str] = []
    for asset in assets:
        if not _matches(asset, "accessory", "accessories"):
            continue
        ident = asset.get("id") or asset.get("name")
        if ident:
            accessories.append(str(ident))
    return accessories


def _rpm_id_from(data: Dict[str, Any], url: str) -> str:
    for key in ("id", "avatarId"):
        value = data.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    try:
        stem = PurePosixPath(urlparse(url).path).stem
    except ValueError:
        stem = ""
    return stem or "unknown"


class AvatarEventParser:
    """Normalizes the heterogeneous avatar payload into a request value object."""

    def __init__(self, *, source: str = "avatar_creation_session", default_body_type: str = "halfbody") -> None:
        self.source = source
        self.default_body_type = default_body_type

    def parse(self, envelope: ParsedEnvelope) -> UpdateAvatarRequest:
        if envelope.type is not EnvelopeType.AVATAR:
            raise MalformedPayload(f"Expected an avatar envelope, got {envelope.raw_type!r}", step="parse")

        raw_url = envelope.avatar_url
        if not raw_url:
            raise MalformedPayload("Avatar envelope carries neither data.url nor url", step="parse")

        data = envelope.data
        configuration = data.get("configuration") if isinstance(data.get("configuration"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        assets = _as_assets(configuration.get("assets"))

        body_type = configuration.get("bodyType")
        avatar_config = AvatarConfiguration(
            gender=normalize_gender(configuration.get("gender")),
            body_type=normalize_body_type(body_type if body_type is not None else self.default_body_type),
            skin_tone=extract_asset_value(assets, "skin", "tone") or "medium",
            hair_style=extract_asset_value(assets, "hair", "style") or "default",
            hair_color=extract_asset_value(assets, "hair", "color") or "brown",
            eye_color=extract_asset_value(assets, "eyes", "color") or "brown",
            quality_level=normalize_quality(metadata.get("quality")),
        )

        customizations = AvatarCustomizations(
            face=FaceCustomization(
                shape=extract_asset_value(assets, "face", "shape") or "default",
                features=extract_facial_features(assets),
            ),
            hair=HairCustomization(
                style=avatar_config.hair_style,
                color=avatar_config.hair_color,
                length=extract_asset_value(assets, "hair", "length"),
            ),
            outfit=OutfitCustomization(
                top=extract_asset_value(assets, "outfit", "top"),
                bottom=extract_asset_value(assets, "outfit", "bottom"),
                shoes=extract_asset_value(assets, "outfit", "shoes"),
                accessories=extract_accessories(assets),
            ),
            body=BodyCustomization(),
        )

        version = metadata.get("version")
        request = UpdateAvatarRequest(
            rpm_id=_rpm_id_from(data, raw_url),
            rpm_url=process_model_url(raw_url),
            configuration=avatar_config,
            customizations=customizations,
            preferences=AvatarProcessingPreferences(
                quality_preference=avatar_config.quality_level,
                optimization_profile=avatar_config.optimization_profile,
            ),
            metadata=AvatarRequestMetadata(
                version=str(version) if isinstance(version, (str, int, float)) and str(version) else "1.0",
                source=self.source,
            ),
        )
        logger.info("Parsed avatar event %s (%s, %s)", request.rpm_id, avatar_config.gender.value, avatar_config.body_type.value)
        return request
