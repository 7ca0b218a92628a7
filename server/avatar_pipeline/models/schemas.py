"""Pydantic models describing avatar records, requests and API payloads."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .normalization import (
    is_valid_url,
    normalize_body_type,
    normalize_gender,
    normalize_quality,
    normalize_status,
)


class AvatarGender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    NON_BINARY = "non-binary"
    CUSTOM = "custom"


class AvatarBodyType(str, Enum):
    FULLBODY = "fullbody"
    HALFBODY = "halfbody"
    HEAD = "head"


class AvatarQualityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


class AvatarStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class AvatarErrorType(str, Enum):
    """Error classification carried on ``AvatarError.type``."""

    CREATION_FAILED = "CREATION_FAILED"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    RPM_ERROR = "RPM_ERROR"
    WEBVIEW_ERROR = "WEBVIEW_ERROR"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_AVATAR_DATA = "INVALID_AVATAR_DATA"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class AvatarConfiguration(FrozenCamelModel):
    """Normalized appearance settings; enum fields never carry raw input."""

    gender: AvatarGender = AvatarGender.MALE
    body_type: AvatarBodyType = AvatarBodyType.HALFBODY
    skin_tone: str = "medium"
    hair_style: str = "default"
    hair_color: str = "brown"
    eye_color: str = "brown"
    cultural_context: str = "international"
    quality_level: AvatarQualityLevel = AvatarQualityLevel.MEDIUM
    optimization_profile: str = "balanced"

    @field_validator("gender", mode="before")
    @classmethod
    def _normalize_gender(cls, value: Any) -> str:
        return normalize_gender(value)

    @field_validator("body_type", mode="before")
    @classmethod
    def _normalize_body_type(cls, value: Any) -> str:
        return normalize_body_type(value)

    @field_validator("quality_level", mode="before")
    @classmethod
    def _normalize_quality(cls, value: Any) -> str:
        return normalize_quality(value)


class FaceCustomization(FrozenCamelModel):
    shape: str = "default"
    features: Dict[str, float] = Field(default_factory=dict)
    expressions: List[str] = Field(default_factory=list)


class HairCustomization(FrozenCamelModel):
    style: str = "default"
    color: str = "brown"
    length: Optional[str] = None


class OutfitCustomization(FrozenCamelModel):
    top: Optional[str] = None
    bottom: Optional[str] = None
    shoes: Optional[str] = None
    accessories: List[str] = Field(default_factory=list)


class BodyCustomization(FrozenCamelModel):
    height: float = 1.0
    build: str = "medium"
    proportions: Dict[str, float] = Field(default_factory=dict)


class AvatarCustomizations(FrozenCamelModel):
    face: Optional[FaceCustomization] = None
    hair: Optional[HairCustomization] = None
    outfit: Optional[OutfitCustomization] = None
    body: Optional[BodyCustomization] = None


class AvatarProcessingPreferences(FrozenCamelModel):
    auto_optimize: bool = True
    quality_preference: AvatarQualityLevel = AvatarQualityLevel.MEDIUM
    optimization_profile: str = "balanced"
    iranian_context: bool = False
    cultural_adaptations: bool = False
    target_platform: str = "mobile"
    accessibility_optimizations: bool = False
    high_contrast_mode: bool = False


class AvatarRequestMetadata(FrozenCamelModel):
    created_with: str = "readyplayerme"
    version: str = "1.0"
    source: Optional[str] = None


class UpdateAvatarRequest(FrozenCamelModel):
    """Value object produced once per successful creation session."""

    rpm_id: str
    rpm_url: str
    configuration: AvatarConfiguration = Field(default_factory=AvatarConfiguration)
    customizations: Optional[AvatarCustomizations] = None
    preferences: Optional[AvatarProcessingPreferences] = None
    metadata: Optional[AvatarRequestMetadata] = None


class AvatarError(FrozenCamelModel):
    type: str = AvatarErrorType.UNKNOWN_ERROR.value
    code: str = "UNKNOWN"
    message: str = "An unknown error occurred"
    user_message: str = "Something went wrong with your avatar"
    persian_message: Optional[str] = None
    step: Optional[str] = None
    rpm_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    retryable: bool = True
    suggested_action: Optional[str] = None
    fallback_options: Optional[List[str]] = None


def _check_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not is_valid_url(value):
        raise ValueError(f"invalid URL: {value!r}")
    return value


class AvatarThumbnails(FrozenCamelModel):
    small: Optional[str] = None
    medium: Optional[str] = None
    large: Optional[str] = None
    square: Optional[str] = None
    portrait: Optional[str] = None
    landscape: Optional[str] = None

    @field_validator("*")
    @classmethod
    def _urls(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)


class AvatarOptimizedAssets(FrozenCamelModel):
    mobile: Optional[str] = None
    mobile_hd: Optional[str] = None
    web: Optional[str] = None
    web_hd: Optional[str] = None
    ar: Optional[str] = None
    vr: Optional[str] = None
    streaming: Optional[str] = None
    low_latency: Optional[str] = None

    @field_validator("*")
    @classmethod
    def _urls(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)


THUMBNAIL_SLOTS = tuple(AvatarThumbnails.model_fields)
OPTIMIZED_SLOTS = tuple(AvatarOptimizedAssets.model_fields)


class AvatarState(FrozenCamelModel):
    """Canonical avatar record; replaced wholesale, never patched."""

    rpm_id: Optional[str] = None
    rpm_url: Optional[str] = None
    version: int = Field(default=1, ge=1)
    status: AvatarStatus = AvatarStatus.NONE
    last_updated: Optional[datetime] = None
    thumbnails: AvatarThumbnails = Field(default_factory=AvatarThumbnails)
    optimized: AvatarOptimizedAssets = Field(default_factory=AvatarOptimizedAssets)
    glb: Optional[str] = None
    usdz: Optional[str] = None
    fbx: Optional[str] = None
    configuration: AvatarConfiguration = Field(default_factory=AvatarConfiguration)
    customizations: Optional[AvatarCustomizations] = None
    processing_metadata: Optional[Dict[str, Any]] = None
    error: Optional[AvatarError] = None
    cache_key: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("rpm_url", "glb", "usdz", "fbx")
    @classmethod
    def _urls(cls, value: Optional[str]) -> Optional[str]:
        return _check_url(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        return normalize_status(value)


# --- API payloads -----------------------------------------------------------


class SessionCreateRequest(CamelModel):
    """Incoming payload for opening a new avatar creation session."""

    access_token: Optional[str] = Field(default=None, description="Bearer token for backend sync")
    gender: Optional[str] = Field(default=None, description="Declared gender, used for fallbacks")
    platform: Optional[str] = Field(default=None, description="Client platform (ios, android, web)")
    resume: bool = Field(
        default=False, description="Restore the persisted avatar instead of loading the surface when one exists"
    )


class SessionResponse(CamelModel):
    """Response returned after session creation."""

    session_id: str = Field(..., description="Identifier for the creation session")
    state: str = Field(default="loading", description="Current controller state")
    creator_url: Optional[str] = Field(default=None, description="URL to load in the embedded surface")


class SessionStatusResponse(CamelModel):
    """Represents the current state of a session."""

    session_id: str
    state: str
    avatar: Optional[AvatarState] = None
    error: Optional[AvatarError] = None
    display_url: Optional[str] = None
    quality_score: Optional[int] = None
    history: List[str] = Field(default_factory=list)


class AvatarFetchResponse(CamelModel):
    """Avatar read back from the backend, or the local copy when it is unreachable."""

    session_id: str
    avatar: Optional[AvatarState] = None
    polling: bool = Field(default=False, description="Whether status polling is running for this avatar")


class ChannelMessageRequest(CamelModel):
    message: Union[str, Dict[str, Any]]


class SkipRequest(CamelModel):
    gender: Optional[str] = None
