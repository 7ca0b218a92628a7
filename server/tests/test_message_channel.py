from __future__ import annotations

import asyncio
import json

from avatar_pipeline.services.message_channel import (
    EnvelopeType,
    MessageChannelAdapter,
    ParsedEnvelope,
    ParseFailure,
    creator_url,
)

DOMAINS = ("readyplayer.me", "iranverse.io")


def _run(coro):  # noqa: ANN001
    return asyncio.run(coro)


def test_json_envelope_is_classified() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive('{"type": "iframe_loaded"}')
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.IFRAME_LOADED
    assert result.source == "json"


def test_frame_api_event_names_are_aliases() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive(
        {"eventName": "v1.avatar.exported", "data": {"url": "https://models.readyplayer.me/abc.glb"}}
    )
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.AVATAR
    assert result.avatar_url == "https://models.readyplayer.me/abc.glb"


def test_data_url_wins_over_top_level_url() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive(
        {"type": "avatar", "url": "https://a.iranverse.io/top.glb", "data": {"url": "https://a.iranverse.io/data.glb"}}
    )
    assert isinstance(result, ParsedEnvelope)
    assert result.avatar_url == "https://a.iranverse.io/data.glb"


def test_unknown_type_is_kept_as_unknown_variant() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive({"type": "v1.something.new"})
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.UNKNOWN
    assert result.raw_type == "v1.something.new"


def test_error_envelope_with_object_message_is_accepted() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive({"type": "error", "message": {"code": "E42", "message": "Upload rejected"}})
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.ERROR
    assert result.message == "Upload rejected"


def test_non_text_message_and_url_are_coerced() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive('{"type": "error", "message": ["quota", 3], "url": 7}')
    assert isinstance(result, ParsedEnvelope)
    assert result.message == '["quota", 3]'
    assert result.url is None


def test_bare_model_url_becomes_avatar_envelope() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive("https://models.readyplayer.me/64f1.glb")
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.AVATAR
    assert result.url == "https://models.readyplayer.me/64f1.glb"
    assert result.source == "bare_url"


def test_json_encoded_bare_url_is_unwrapped() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    result = adapter.receive(json.dumps("https://x.iranverse.io/m.glb"))
    assert isinstance(result, ParsedEnvelope)
    assert result.type is EnvelopeType.AVATAR


def test_strict_mode_rejects_foreign_host_mentioning_provider() -> None:
    suspicious = "https://evil.example.com/readyplayer.me/m.glb"
    assert isinstance(MessageChannelAdapter(DOMAINS).receive(suspicious), ParseFailure)

    loose = MessageChannelAdapter(DOMAINS, strict_bare_urls=False)
    assert isinstance(loose.receive(suspicious), ParsedEnvelope)


def test_invalid_messages_never_raise() -> None:
    adapter = MessageChannelAdapter(DOMAINS)
    for raw in ("", "   ", "not json at all", "{broken", 42, None, b"\xff\xfe", '{"data": {}}', {"type": 5}):
        assert isinstance(adapter.receive(raw), ParseFailure)


def test_send_serializes_command_to_sink() -> None:
    sent = []

    async def sink(text: str) -> None:
        sent.append(text)

    adapter = MessageChannelAdapter(DOMAINS, sink=sink)
    _run(adapter.send({"type": "reload", "attempt": 2}))
    assert json.loads(sent[0]) == {"type": "reload", "attempt": 2}


def test_send_swallows_sink_failures() -> None:
    async def sink(text: str) -> None:
        raise ConnectionError("surface gone")

    adapter = MessageChannelAdapter(DOMAINS, sink=sink)
    _run(adapter.send({"type": "reload"}))


def test_creator_url_carries_frame_options() -> None:
    url = creator_url("demo", {"clearCache": True, "bodyType": "halfbody", "quickStart": False})
    assert url == "https://demo.readyplayer.me/avatar?frameApi&clearCache=true&bodyType=halfbody&quickStart=false"
