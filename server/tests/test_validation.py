from __future__ import annotations

from avatar_pipeline.services.event_parser import AvatarEventParser
from avatar_pipeline.services.message_channel import MessageChannelAdapter
from avatar_pipeline.services.validation import validate_avatar_data


def test_parsed_request_is_valid() -> None:
    envelope = MessageChannelAdapter(("readyplayer.me",)).receive("https://models.readyplayer.me/abc.glb")
    result = validate_avatar_data(AvatarEventParser().parse(envelope))
    assert result.is_valid, result.errors


def test_empty_and_foreign_values_are_invalid() -> None:
    assert not validate_avatar_data({}).is_valid
    assert not validate_avatar_data(42).is_valid
    assert not validate_avatar_data(None).is_valid


def test_identity_and_model_reference_required() -> None:
    result = validate_avatar_data({"rpmId": "a"})
    assert not result.is_valid
    assert "Missing avatar URL or GLB file" in result.errors

    result = validate_avatar_data({"rpmUrl": "https://x.test/a.glb"})
    assert "Missing RPM ID or fallback indicator" in result.errors


def test_fallback_flag_replaces_identity() -> None:
    assert validate_avatar_data({"fallback": True, "glb": "https://x.test/a.glb"}).is_valid


def test_enum_membership_is_checked_on_raw_mappings() -> None:
    result = validate_avatar_data(
        {
            "rpmId": "a",
            "rpmUrl": "https://x.test/a.glb",
            "status": "exploded",
            "configuration": {"gender": "robot", "bodyType": "torso", "qualityLevel": "insane"},
        }
    )
    assert not result.is_valid
    assert "Invalid gender configuration" in result.errors
    assert "Invalid body type configuration" in result.errors
    assert "Invalid quality level configuration" in result.errors
    assert "Invalid avatar status" in result.errors


def test_every_url_is_checked() -> None:
    result = validate_avatar_data(
        {
            "rpmId": "a",
            "rpmUrl": "https://x.test/a.glb",
            "usdz": "a.usdz",
            "thumbnails": {"small": "nope"},
            "optimized": {"mobile": "https://x.test/m.glb", "web": "also nope"},
        }
    )
    assert result.errors == [
        "Invalid usdz URL format",
        "Invalid thumbnails.small URL format",
        "Invalid optimized.web URL format",
    ]
