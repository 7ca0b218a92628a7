"""Context-aware asset URL selection and cache-busting."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..models.schemas import AvatarQualityLevel, AvatarState


class AssetContext(str, Enum):
    THUMBNAIL = "thumbnail"
    DISPLAY = "display"
    THREE_D = "3d"
    AR = "ar"
    VR = "vr"


_Pick = Callable[[AvatarState], Optional[str]]

_CHAINS = {
    AssetContext.THUMBNAIL: [
        lambda s: s.thumbnails.medium,
        lambda s: s.thumbnails.small,
        lambda s: s.optimized.mobile,
    ],
    AssetContext.DISPLAY: [
        lambda s: s.optimized.mobile,
        lambda s: s.optimized.web,
        lambda s: s.glb,
    ],
    AssetContext.THREE_D: [
        lambda s: s.glb,
        lambda s: s.optimized.mobile,
    ],
    AssetContext.AR: [
        lambda s: s.optimized.ar,
        lambda s: s.usdz,
        lambda s: s.glb,
    ],
    AssetContext.VR: [
        lambda s: s.optimized.vr,
        lambda s: s.glb,
    ],
}
_DEFAULT_CHAIN: List[_Pick] = [lambda s: s.optimized.mobile, lambda s: s.glb]
_WEB_DISPLAY_CHAIN: List[_Pick] = [
    lambda s: s.optimized.web,
    lambda s: s.optimized.web_hd,
    lambda s: s.optimized.mobile,
    lambda s: s.glb,
]
_NON_IOS_AR_CHAIN: List[_Pick] = [lambda s: s.optimized.ar, lambda s: s.glb]


def _chain_for(context: Union[AssetContext, str, None], platform: Optional[str]) -> List[_Pick]:
    try:
        resolved = AssetContext(getattr(context, "value", context))
    except ValueError:
        return _DEFAULT_CHAIN
    platform = (platform or "").strip().lower()
    if resolved is AssetContext.DISPLAY and platform == "web":
        return _WEB_DISPLAY_CHAIN
    # USDZ is only usable by AR Quick Look on iOS.
    if resolved is AssetContext.AR and platform and platform != "ios":
        return _NON_IOS_AR_CHAIN
    return _CHAINS[resolved]


def resolve_asset_url(
    state: Optional[AvatarState],
    context: Union[AssetContext, str] = AssetContext.DISPLAY,
    platform: Optional[str] = None,
) -> Optional[str]:
    """First populated URL in the priority chain for ``context``."""

    if state is None:
        return None
    for pick in _chain_for(context, platform):
        url = pick(state)
        if url:
            return url
    return None


def versioned_url(base_url: Optional[str], version: int, now_ms: Optional[int] = None) -> Optional[str]:
    """Add ``v=<version>`` and a ``t=<millis>`` cache-buster to ``base_url``."""

    if not base_url:
        return None
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    try:
        parts = urlsplit(base_url)
        if not parts.scheme or not parts.netloc:
            raise ValueError("not an absolute URL")
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in {"v", "t"}]
        query.extend([("v", str(version)), ("t", str(stamp))])
        return urlunsplit(parts._replace(query=urlencode(query, safe=",")))
    except ValueError:
        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}v={version}&t={stamp}"


def is_avatar_expired(state: AvatarState, now: Optional[datetime] = None) -> bool:
    if state.expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    expires_at = state.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now > expires_at


def file_extension(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        path = urlsplit(url).path or url
    except ValueError:
        path = url
    suffix = PurePosixPath(path).suffix.lower().lstrip(".")
    return suffix or None


def estimate_file_size_category(quality: Union[AvatarQualityLevel, str]) -> str:
    value = getattr(quality, "value", quality)
    if value == AvatarQualityLevel.LOW.value:
        return "small"
    if value in {AvatarQualityLevel.HIGH.value, AvatarQualityLevel.ULTRA.value}:
        return "large"
    return "medium"


def platform_optimal_format(platform: Optional[str]) -> str:
    """``ar`` for iOS (USDZ quick look), ``3d`` for Android (GLB), else ``standard``."""

    platform = (platform or "").strip().lower()
    if platform == "ios":
        return "ar"
    if platform == "android":
        return "3d"
    return "standard"
