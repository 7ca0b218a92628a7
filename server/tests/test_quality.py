from __future__ import annotations

from avatar_pipeline.models.schemas import (
    OPTIMIZED_SLOTS,
    THUMBNAIL_SLOTS,
    AvatarCustomizations,
    AvatarOptimizedAssets,
    AvatarState,
    AvatarThumbnails,
)
from avatar_pipeline.services.quality import avatar_quality_score

URL = "https://cdn.test/asset"


def test_empty_state_scores_zero() -> None:
    assert avatar_quality_score(AvatarState()) == 0


def test_base_model_alone() -> None:
    assert avatar_quality_score(AvatarState(glb=f"{URL}.glb")) == 20


def test_complete_state_scores_hundred() -> None:
    state = AvatarState(
        rpm_url=f"{URL}.glb",
        thumbnails=AvatarThumbnails(**{slot: f"{URL}/{slot}.png" for slot in THUMBNAIL_SLOTS}),
        optimized=AvatarOptimizedAssets(**{slot: f"{URL}/{slot}.glb" for slot in OPTIMIZED_SLOTS}),
        usdz=f"{URL}.usdz",
        fbx=f"{URL}.fbx",
        customizations=AvatarCustomizations(),
    )
    assert avatar_quality_score(state) == 100


def test_adding_an_optimized_variant_never_lowers_the_score() -> None:
    state = AvatarState(glb=f"{URL}.glb")
    previous = avatar_quality_score(state)
    filled = {}
    for slot in OPTIMIZED_SLOTS:
        filled[slot] = f"{URL}/{slot}.glb"
        state = state.model_copy(update={"optimized": AvatarOptimizedAssets(**filled)})
        score = avatar_quality_score(state)
        assert score >= previous
        previous = score
    assert previous == 50
