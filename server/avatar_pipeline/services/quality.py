"""Completeness heuristic for avatar asset sets."""
from __future__ import annotations

from ..models.schemas import OPTIMIZED_SLOTS, THUMBNAIL_SLOTS, AvatarState

BASE_MODEL_WEIGHT = 20.0
THUMBNAIL_WEIGHT = 20.0
OPTIMIZED_WEIGHT = 30.0
SECONDARY_FORMAT_WEIGHT = 10.0  # per format: usdz, fbx
COMPLETENESS_WEIGHT = 10.0


def avatar_quality_score(state: AvatarState) -> int:
    """Score in [0, 100]; adding an asset never lowers it."""

    score = 0.0
    if state.rpm_url or state.glb:
        score += BASE_MODEL_WEIGHT

    thumbnails = sum(1 for slot in THUMBNAIL_SLOTS if getattr(state.thumbnails, slot))
    score += THUMBNAIL_WEIGHT * thumbnails / len(THUMBNAIL_SLOTS)

    optimized = sum(1 for slot in OPTIMIZED_SLOTS if getattr(state.optimized, slot))
    score += OPTIMIZED_WEIGHT * optimized / len(OPTIMIZED_SLOTS)

    if state.usdz:
        score += SECONDARY_FORMAT_WEIGHT
    if state.fbx:
        score += SECONDARY_FORMAT_WEIGHT

    if state.configuration is not None and state.customizations is not None:
        score += COMPLETENESS_WEIGHT

    return max(0, min(100, int(round(score))))
