"""Deterministic default avatars used when creation fails, times out or is skipped."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..config import Settings
from ..models.normalization import GENDER_ALIASES
from ..models.schemas import (
    AvatarConfiguration,
    AvatarOptimizedAssets,
    AvatarState,
    AvatarStatus,
    AvatarThumbnails,
)
from .response_mapper import generate_cache_key

FALLBACK_VERSION = 1


class FallbackProvider:
    """Builds the fallback ``AvatarState`` for a declared gender."""

    def __init__(self, settings: Settings) -> None:
        self._urls = dict(settings.fallback_avatars)
        self._ttl = timedelta(hours=settings.fallback_ttl_hours)

    def resolve_gender(self, gender: Any) -> str:
        """Genders without a canonical model (including ``custom``) use ``male``."""

        value = getattr(gender, "value", gender)
        if isinstance(value, str):
            normalized = GENDER_ALIASES.get(value.strip().lower())
            if normalized in self._urls:
                return normalized
        return "male"

    def default_for(
        self,
        gender: Any = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AvatarState:
        selected = self.resolve_gender(gender)
        base = self._urls[selected]
        rpm_id = f"fallback_{selected}"
        now = now or datetime.now(timezone.utc)
        is_ios = (platform or "").strip().lower() == "ios"

        return AvatarState(
            rpm_id=rpm_id,
            rpm_url=base,
            version=FALLBACK_VERSION,
            status=AvatarStatus.COMPLETE,
            thumbnails=AvatarThumbnails(
                small=f"{base}?size=128",
                medium=f"{base}?size=256",
                large=f"{base}?size=512",
                square=f"{base}?size=256&crop=square",
                portrait=f"{base}?size=256&crop=portrait",
                landscape=f"{base}?size=256&crop=landscape",
            ),
            optimized=AvatarOptimizedAssets(
                mobile=base,
                mobile_hd=base,
                web=base,
                web_hd=base,
                streaming=base,
                low_latency=base,
            ),
            glb=base,
            usdz=base.replace(".glb", ".usdz") if is_ios else None,
            configuration=AvatarConfiguration(gender=selected, hair_style="short_001"),
            cache_key=generate_cache_key(rpm_id, FALLBACK_VERSION),
            expires_at=now + self._ttl,
        )
