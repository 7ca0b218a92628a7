"""Adapter between the embedded creation surface and the session controller.

Everything arriving here is untrusted: it may be a JSON envelope, a bare model
URL posted by the provider page, or garbage. ``receive`` never raises; it
returns either a ``ParsedEnvelope`` or a ``ParseFailure`` the caller ignores.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union
from urllib.parse import urlencode, urlparse

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

OutboundSink = Callable[[str], Awaitable[None]]

MODEL_EXTENSIONS = (".glb",)


class EnvelopeType(str, Enum):
    IFRAME_LOADED = "iframe_loaded"
    PAGE_LOADED = "page_loaded"
    AVATAR = "avatar"
    CLOSE = "close"
    ERROR = "error"
    USER_AUTHORIZED = "user_authorized"
    USER_UPDATED = "user_updated"
    UNKNOWN = "unknown"


# Ready Player Me frame API event names.
_EVENT_ALIASES: Dict[str, EnvelopeType] = {
    "v1.frame.ready": EnvelopeType.IFRAME_LOADED,
    "v1.avatar.exported": EnvelopeType.AVATAR,
    "v1.user.set": EnvelopeType.USER_AUTHORIZED,
    "v1.user.authorized": EnvelopeType.USER_AUTHORIZED,
    "v1.user.updated": EnvelopeType.USER_UPDATED,
}


class RawEnvelope(BaseModel):
    """Shape check applied before any branching on the envelope."""

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    eventName: Optional[str] = None
    data: Optional[Any] = None
    # Providers are inconsistent about these two; coerced after the shape check.
    url: Optional[Any] = None
    message: Optional[Any] = None


@dataclass(frozen=True)
class ParsedEnvelope:
    type: EnvelopeType
    raw_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    url: Optional[str] = None
    message: Optional[str] = None
    source: str = "json"

    @property
    def avatar_url(self) -> Optional[str]:
        """Model URL from ``data.url`` first, then the top-level ``url``."""

        candidate = self.data.get("url")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        if self.url and self.url.strip():
            return self.url.strip()
        return None


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str = ""


ReceiveResult = Union[ParsedEnvelope, ParseFailure]


def _snippet(raw: Any, limit: int = 200) -> str:
    text = raw if isinstance(raw, str) else repr(raw)
    return text.strip().replace("\n", " ")[:limit]


def _message_text(value: Any) -> Optional[str]:
    """Readable text for a provider message that may be a string or an object."""

    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("message", "error", "description"):
            nested = value.get(key)
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def _classify(raw_type: str) -> EnvelopeType:
    normalized = raw_type.strip().lower()
    if normalized in _EVENT_ALIASES:
        return _EVENT_ALIASES[normalized]
    try:
        return EnvelopeType(normalized)
    except ValueError:
        return EnvelopeType.UNKNOWN


class MessageChannelAdapter:
    """Parses inbound envelopes and serializes outbound control commands."""

    def __init__(
        self,
        provider_domains: Iterable[str],
        *,
        strict_bare_urls: bool = True,
        model_extensions: Iterable[str] = MODEL_EXTENSIONS,
        sink: Optional[OutboundSink] = None,
    ) -> None:
        self.provider_domains = tuple(d.strip().lower() for d in provider_domains if d.strip())
        self.strict_bare_urls = strict_bare_urls
        self.model_extensions = tuple(ext.lower() for ext in model_extensions)
        self.sink = sink

    # -- inbound ------------------------------------------------------------

    def receive(self, raw_message: Union[str, Dict[str, Any], Any]) -> ReceiveResult:
        """Turn one raw channel message into an envelope or a failure."""

        if isinstance(raw_message, dict):
            return self._from_mapping(raw_message, source="object")

        if isinstance(raw_message, bytes):
            try:
                raw_message = raw_message.decode("utf-8")
            except UnicodeDecodeError:
                return ParseFailure("undecodable bytes")

        if not isinstance(raw_message, str):
            return ParseFailure(f"unsupported message type {type(raw_message).__name__}", _snippet(raw_message))

        text = raw_message.strip()
        if not text:
            return ParseFailure("empty message")

        try:
            decoded = json.loads(text)
        except (json.JSONDecodeError, RecursionError):
            decoded = None
        else:
            if isinstance(decoded, dict):
                return self._from_mapping(decoded, source="json")
            if isinstance(decoded, str):
                text = decoded.strip()

        if self.looks_like_model_url(text):
            return ParsedEnvelope(
                type=EnvelopeType.AVATAR,
                raw_type=EnvelopeType.AVATAR.value,
                url=text,
                source="bare_url",
            )

        logger.warning("Ignoring invalid channel message: %s", _snippet(text))
        return ParseFailure("unrecognized message format", _snippet(text))

    def _from_mapping(self, payload: Dict[str, Any], *, source: str) -> ReceiveResult:
        try:
            envelope = RawEnvelope.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Channel envelope failed shape check: %s", exc.errors()[:1])
            return ParseFailure("envelope shape invalid", _snippet(payload))

        raw_type = envelope.type or envelope.eventName
        if not raw_type or not raw_type.strip():
            return ParseFailure("envelope missing type", _snippet(payload))

        data = envelope.data if isinstance(envelope.data, dict) else {}
        return ParsedEnvelope(
            type=_classify(raw_type),
            raw_type=raw_type,
            data=dict(data),
            url=envelope.url if isinstance(envelope.url, str) else None,
            message=_message_text(envelope.message),
            source=source,
        )

    def looks_like_model_url(self, text: str) -> bool:
        """Bare-string heuristic: provider domain plus a model file extension."""

        if not text or any(ch.isspace() for ch in text):
            return False
        lowered = text.lower()

        if not self.strict_bare_urls:
            return any(token in lowered for token in self.provider_domains) and any(
                ext in lowered for ext in self.model_extensions
            )

        try:
            parsed = urlparse(text)
        except ValueError:
            return False
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        if not any(host == token or host.endswith("." + token) for token in self.provider_domains):
            return False
        return parsed.path.lower().endswith(self.model_extensions)

    # -- outbound -----------------------------------------------------------

    async def send(self, command: Dict[str, Any]) -> None:
        """Fire-and-forget delivery of a control command to the surface."""

        if self.sink is None:
            logger.debug("No outbound sink attached; dropping command %s", command.get("type"))
            return
        try:
            await self.sink(json.dumps(command))
        except Exception:
            logger.exception("Failed sending %s command to creation surface", command.get("type"))


def creator_url(subdomain: str, frame_options: Dict[str, Any]) -> str:
    """URL of the provider's creation page with the frame API enabled."""

    def _flag(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    query = urlencode({key: _flag(value) for key, value in frame_options.items()})
    base = f"https://{subdomain}.readyplayer.me/avatar?frameApi"
    return f"{base}&{query}" if query else base
