"""Read-only avatar helpers for clients that never opened a session."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from ..models import schemas
from ..services.asset_resolver import AssetContext, resolve_asset_url, versioned_url
from ..services.session_registry import registry

router = APIRouter(prefix="/avatars", tags=["avatars"])


@router.get("/fallback/{gender}", response_model=schemas.AvatarState)
async def get_fallback_avatar(gender: str, platform: Optional[str] = None) -> schemas.AvatarState:
    """Default avatar for ``gender``; unknown values resolve to the male model."""

    return registry.fallback.default_for(gender, platform)


@router.get("/fallback/{gender}/asset")
async def get_fallback_asset(
    gender: str, context: AssetContext = AssetContext.DISPLAY, platform: Optional[str] = None
) -> dict[str, Optional[str]]:
    avatar = registry.fallback.default_for(gender, platform)
    url = resolve_asset_url(avatar, context, platform)
    return {"context": context.value, "url": versioned_url(url, avatar.version)}
