"""State machine driving one embedded avatar creation session.

All inputs (channel messages, timer firings, user actions) run on a single
asyncio event loop, so transitions never interleave except at ``await``
points. The only await points inside a transition are local persistence;
the single-flight flag and the generation counter cover them.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from typing_extensions import assert_never

from ..config import Settings
from ..models.normalization import normalize_status
from ..models.schemas import AvatarError, AvatarState, AvatarStatus, UpdateAvatarRequest
from .asset_resolver import AssetContext, resolve_asset_url, versioned_url
from .backend_client import AvatarBackendClient
from .errors import (
    AvatarPipelineError,
    BackendSyncFailure,
    InvalidResponse,
    LocalPersistenceFailure,
    ProviderReportedError,
    SessionTimeout,
    SessionTransitionError,
    ValidationFailure,
)
from .event_parser import AvatarEventParser
from .fallback import FallbackProvider
from .message_channel import EnvelopeType, MessageChannelAdapter, ParsedEnvelope, ParseFailure, creator_url
from .quality import avatar_quality_score
from .response_mapper import map_avatar_response
from .storage import AVATAR_URL_KEY, KeyValueStore
from .validation import validate_avatar_data

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    CREATING = "creating"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


_ALLOWED: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.LOADING, SessionState.COMPLETE}),
    SessionState.LOADING: frozenset({SessionState.READY, SessionState.ERROR, SessionState.TIMED_OUT}),
    SessionState.READY: frozenset(
        {SessionState.CREATING, SessionState.ERROR, SessionState.TIMED_OUT, SessionState.SKIPPED}
    ),
    SessionState.CREATING: frozenset({SessionState.PROCESSING, SessionState.ERROR, SessionState.TIMED_OUT}),
    SessionState.PROCESSING: frozenset({SessionState.COMPLETE, SessionState.ERROR}),
    SessionState.COMPLETE: frozenset(),
    SessionState.ERROR: frozenset({SessionState.LOADING, SessionState.SKIPPED}),
    SessionState.TIMED_OUT: frozenset({SessionState.LOADING, SessionState.SKIPPED}),
    SessionState.SKIPPED: frozenset({SessionState.COMPLETE, SessionState.ERROR}),
}

# States in which the embedded surface is still on screen.
_CHANNEL_STATES = frozenset(
    {
        SessionState.LOADING,
        SessionState.READY,
        SessionState.CREATING,
        SessionState.PROCESSING,
        SessionState.ERROR,
        SessionState.TIMED_OUT,
    }
)


_PENDING_STATUSES = frozenset({AvatarStatus.PENDING, AvatarStatus.PROCESSING})


@dataclass(frozen=True)
class Transition:
    source: SessionState
    target: SessionState
    reason: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionEvent:
    """Notification pushed to the UI collaborator."""

    kind: str
    state: SessionState
    payload: Dict[str, Any] = field(default_factory=dict)


def _progress(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0
    return int(min(100, max(0, value)))


SessionListener = Callable[[SessionEvent], None]


class CreationSessionController:
    """Drives the embedded surface from load to a resolved ``AvatarState``."""

    def __init__(
        self,
        session_id: str,
        settings: Settings,
        store: KeyValueStore,
        *,
        channel: Optional[MessageChannelAdapter] = None,
        parser: Optional[AvatarEventParser] = None,
        fallback: Optional[FallbackProvider] = None,
        backend: Optional[AvatarBackendClient] = None,
        access_token: Optional[str] = None,
        gender: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.settings = settings
        self.store = store
        self.channel = channel or MessageChannelAdapter(
            settings.provider_domains, strict_bare_urls=settings.bare_url_strict
        )
        self.parser = parser or AvatarEventParser(default_body_type=str(settings.frame_options.get("bodyType", "halfbody")))
        self.fallback = fallback or FallbackProvider(settings)
        self.backend = backend
        self.access_token = access_token
        self.gender = gender
        self.platform = platform

        self.state = SessionState.IDLE
        self.history: List[Transition] = []
        self.avatar: Optional[AvatarState] = None
        self.error: Optional[AvatarError] = None
        self.provider_user_id: Optional[str] = None
        self.attempts = 0

        self._listeners: List[SessionListener] = []
        self._processing = False
        self._generation = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_guards: FrozenSet[SessionState] = frozenset()
        self._background: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    # -- observation --------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, **payload: Any) -> None:
        event = SessionEvent(kind=kind, state=self.state, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"[Session {self.session_id}] Listener failed handling {kind}")

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def creator_url(self) -> str:
        return creator_url(self.settings.provider_subdomain, self.settings.frame_options)

    def display_url(self) -> Optional[str]:
        if self.avatar is None:
            return None
        base = resolve_asset_url(self.avatar, AssetContext.DISPLAY, self.platform)
        return versioned_url(base, self.avatar.version)

    def quality_score(self) -> Optional[int]:
        return avatar_quality_score(self.avatar) if self.avatar is not None else None

    # -- state machine core --------------------------------------------------

    def _transition(self, target: SessionState, reason: str) -> None:
        source = self.state
        if target not in _ALLOWED[source]:
            raise SessionTransitionError(
                f"Cannot move from {source.value} to {target.value}", step=reason
            )
        if self._timer is not None and target not in self._timer_guards:
            self._disarm_timer()
        self.state = target
        self.history.append(Transition(source, target, reason))
        logger.info(f"[Session {self.session_id}] State: {source.value} -> {target.value} ({reason})")
        self._emit("state_changed", source=source.value, target=target.value, reason=reason)

    def _arm_timer(self, delay: Optional[float], guards: FrozenSet[SessionState]) -> None:
        self._disarm_timer()
        if not delay or delay <= 0:
            return
        loop = asyncio.get_running_loop()
        generation = self._generation
        self._timer_guards = guards
        self._timer = loop.call_later(delay, self._on_timer_fired, generation, delay)

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_guards = frozenset()

    def _on_timer_fired(self, generation: int, delay: float) -> None:
        guards = self._timer_guards
        self._timer = None
        self._timer_guards = frozenset()
        if generation != self._generation or self.state not in guards:
            return
        logger.warning(f"[Session {self.session_id}] Timed out after {delay:.1f}s in {self.state.value}")
        self._fail(SessionTimeout(f"No progress within {delay:.0f}s while {self.state.value}", step=self.state.value))

    def _fail(self, exc: AvatarPipelineError) -> None:
        target = SessionState.TIMED_OUT if isinstance(exc, SessionTimeout) else SessionState.ERROR
        self.error = exc.to_avatar_error(rpm_id=self.avatar.rpm_id if self.avatar else None)
        self._transition(target, exc.code.lower())
        self._emit(
            "error",
            error=self.error.model_dump(by_alias=True, mode="json"),
            retryable=self.error.retryable,
            fatal=exc.fatal,
            analytics_tag="timeout" if target is SessionState.TIMED_OUT else "error",
        )

    # -- user actions --------------------------------------------------------

    async def start(self) -> None:
        """Idle -> Loading; arms the load timeout and configures the surface."""

        if self.state is not SessionState.IDLE:
            raise SessionTransitionError(f"Session already {self.state.value}", step="start")
        await self._enter_loading("start")

    async def retry(self) -> None:
        """Error/TimedOut -> Loading, reloading the embedded surface."""

        if self.state not in (SessionState.ERROR, SessionState.TIMED_OUT):
            raise SessionTransitionError(f"Nothing to retry while {self.state.value}", step="retry")
        await self._enter_loading("retry")
        await self.channel.send({"type": "reload", "attempt": self.attempts})

    async def _enter_loading(self, reason: str) -> None:
        self.attempts += 1
        self.error = None
        self._processing = False
        self._transition(SessionState.LOADING, reason)
        self._arm_timer(self.settings.load_timeout_s, frozenset({SessionState.LOADING}))
        await self.channel.send({"type": "configure", "config": dict(self.settings.frame_options)})

    async def skip(self, gender: Optional[str] = None) -> Optional[AvatarState]:
        """Ready/Error/TimedOut -> Skipped -> Complete with a fallback avatar.

        The fallback URL is persisted like a created avatar so a later
        ``resume`` finds it. Returns ``None`` when persistence fails (the
        session is then in Error) or the session was reset meanwhile.
        """

        if SessionState.SKIPPED not in _ALLOWED[self.state]:
            raise SessionTransitionError(f"Cannot skip while {self.state.value}", step="skip")
        self._processing = False
        self._generation += 1
        generation = self._generation
        self._transition(SessionState.SKIPPED, "skip")
        avatar = self.fallback.default_for(gender or self.gender, self.platform)
        self.error = None
        try:
            persisted = await self._persist_avatar_url(avatar.rpm_url, generation)
        except LocalPersistenceFailure as exc:
            if generation != self._generation:
                return None
            logger.warning(f"[Session {self.session_id}] Could not persist fallback avatar: {exc}")
            self._fail(exc)
            return None
        if not persisted:
            logger.info(f"[Session {self.session_id}] Session reset during skip; fallback dropped")
            return None

        self.avatar = avatar
        self._transition(SessionState.COMPLETE, "fallback")
        self._emit_avatar_ready(fallback=True)
        return avatar

    def cancel(self) -> None:
        """Navigation away: stop the timer, release the flag, drop in-flight work.

        Status polling stops; backend sync tasks already running are left alone.
        """

        self._disarm_timer()
        self._processing = False
        self._generation += 1
        self.stop_status_polling()
        if self.state is SessionState.IDLE:
            return
        source = self.state
        self.state = SessionState.IDLE
        self.history.append(Transition(source, SessionState.IDLE, "cancel"))
        logger.info(f"[Session {self.session_id}] Cancelled from {source.value}")
        self._emit("state_changed", source=source.value, target=SessionState.IDLE.value, reason="cancel")

    async def resume(self) -> bool:
        """Relaunch path: Idle -> Complete from the persisted avatar URL, if any."""

        if self.state is not SessionState.IDLE:
            return False
        generation = self._generation
        avatar = await self._stored_avatar()
        if avatar is None or generation != self._generation or self.state is not SessionState.IDLE:
            return False
        self.avatar = avatar
        self._transition(SessionState.COMPLETE, "resume")
        self._emit_avatar_ready(fallback=False)
        return True

    async def _stored_avatar(self) -> Optional[AvatarState]:
        try:
            stored = await asyncio.to_thread(self.store.get, AVATAR_URL_KEY)
        except LocalPersistenceFailure as exc:
            logger.warning(f"[Session {self.session_id}] Could not read stored avatar: {exc}")
            return None
        if not stored:
            return None
        try:
            avatar = map_avatar_response(
                {"rpmId": f"stored_{self.session_id}", "rpmUrl": stored, "glb": stored, "status": "complete"}
            )
        except InvalidResponse:
            return None
        if avatar.rpm_url is None:
            logger.warning(f"[Session {self.session_id}] Stored avatar URL is not a valid URL; ignoring")
            return None
        return avatar

    async def _persist_avatar_url(self, url: Optional[str], generation: int) -> bool:
        """Write ``@avatar_url`` unless the session was reset around the write.

        A reset that lands while the write is in flight puts the previous
        value back, as long as nothing else has overwritten the key since.
        """

        if not url:
            raise LocalPersistenceFailure("No avatar URL to persist", step="store")
        previous = await asyncio.to_thread(self.store.get, AVATAR_URL_KEY)
        if generation != self._generation:
            return False
        await asyncio.to_thread(self.store.set, AVATAR_URL_KEY, url)
        if generation == self._generation:
            return True

        current = await asyncio.to_thread(self.store.get, AVATAR_URL_KEY)
        if current == url:
            if previous is None:
                await asyncio.to_thread(self.store.delete, AVATAR_URL_KEY)
            else:
                await asyncio.to_thread(self.store.set, AVATAR_URL_KEY, previous)
            logger.info(f"[Session {self.session_id}] Session reset during write; restored previous avatar URL")
        return False

    # -- channel input -------------------------------------------------------

    async def handle_message(self, raw_message: Any) -> None:
        """Entry point for every inbound channel message; never raises."""

        if self.state not in _CHANNEL_STATES:
            logger.debug(f"[Session {self.session_id}] Dropping channel message while {self.state.value}")
            return
        result = self.channel.receive(raw_message)
        if isinstance(result, ParseFailure):
            self._emit("message_ignored", reason=result.reason)
            return
        try:
            await self.dispatch(result)
        except SessionTransitionError as exc:
            logger.warning(f"[Session {self.session_id}] Ignoring {result.raw_type}: {exc}")

    async def dispatch(self, envelope: ParsedEnvelope) -> None:
        kind = envelope.type
        if kind is EnvelopeType.IFRAME_LOADED or kind is EnvelopeType.PAGE_LOADED:
            if self.state is SessionState.LOADING:
                self._transition(SessionState.READY, kind.value)
                self._arm_timer(
                    self.settings.creation_timeout_s,
                    frozenset({SessionState.READY, SessionState.CREATING}),
                )
        elif kind is EnvelopeType.AVATAR:
            await self._handle_avatar(envelope)
        elif kind is EnvelopeType.CLOSE:
            # Confirmation and exit belong to the UI.
            self._emit("close_requested")
        elif kind is EnvelopeType.ERROR:
            if self.state not in (SessionState.LOADING, SessionState.READY, SessionState.CREATING):
                logger.warning(f"[Session {self.session_id}] Provider error while {self.state.value} ignored")
                return
            message = envelope.message or str(envelope.data.get("message") or "Avatar creation failed")
            code = envelope.data.get("code")
            self._fail(ProviderReportedError(message, code=str(code) if code else None, step=self.state.value))
        elif kind is EnvelopeType.USER_AUTHORIZED or kind is EnvelopeType.USER_UPDATED:
            user_id = envelope.data.get("userId") or envelope.data.get("id")
            if user_id:
                self.provider_user_id = str(user_id)
            self._emit("provider_user", event=kind.value, user_id=self.provider_user_id)
        elif kind is EnvelopeType.UNKNOWN:
            logger.info(f"[Session {self.session_id}] Unhandled message type: {envelope.raw_type}")
        else:
            assert_never(kind)

    async def _handle_avatar(self, envelope: ParsedEnvelope) -> None:
        if self._processing:
            logger.info(f"[Session {self.session_id}] Avatar already processing; duplicate ignored")
            return
        if self.state is not SessionState.READY:
            logger.info(f"[Session {self.session_id}] Avatar message ignored while {self.state.value}")
            return

        self._processing = True
        generation = self._generation
        try:
            self._transition(SessionState.CREATING, "avatar")
            request = self.parser.parse(envelope)
            self._transition(SessionState.PROCESSING, "parsed")

            result = validate_avatar_data(request)
            if not result.is_valid:
                raise ValidationFailure("Avatar request failed validation", result.errors, step="validate")

            if not await self._persist_avatar_url(request.rpm_url, generation):
                logger.info(f"[Session {self.session_id}] Session reset during processing; result dropped")
                return

            self.avatar = self._state_from_request(request)
            self._transition(SessionState.COMPLETE, "persisted")
            self._emit_avatar_ready(fallback=False)
            self._start_backend_sync(request, generation)
        except AvatarPipelineError as exc:
            if generation != self._generation:
                return
            logger.warning(f"[Session {self.session_id}] Avatar processing failed: {exc}")
            self._fail(exc)
        finally:
            if generation == self._generation:
                self._processing = False

    def _state_from_request(self, request: UpdateAvatarRequest) -> AvatarState:
        version = self.avatar.version + 1 if self.avatar is not None else 1
        return map_avatar_response(
            {
                "rpmId": request.rpm_id,
                "rpmUrl": request.rpm_url,
                "glb": request.rpm_url,
                "version": version,
                "status": "complete",
                "lastUpdated": datetime.now(timezone.utc).isoformat(),
                "configuration": request.configuration.model_dump(by_alias=True, mode="json"),
                "customizations": (
                    request.customizations.model_dump(by_alias=True, mode="json")
                    if request.customizations
                    else None
                ),
            }
        )

    def _emit_avatar_ready(self, *, fallback: bool) -> None:
        assert self.avatar is not None
        self._emit(
            "avatar_ready",
            rpm_id=self.avatar.rpm_id,
            version=self.avatar.version,
            cache_key=self.avatar.cache_key,
            display_url=self.display_url(),
            quality_score=self.quality_score(),
            fallback=fallback,
        )

    # -- backend sync ----------------------------------------------------------

    def _start_backend_sync(self, request: UpdateAvatarRequest, generation: int) -> None:
        if self.backend is None or not self.access_token:
            logger.info(f"[Session {self.session_id}] Backend sync disabled; avatar kept locally")
            self._emit("backend_sync", ok=False, skipped=True)
            return
        task = asyncio.create_task(self._sync_backend(request, generation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sync_backend(self, request: UpdateAvatarRequest, generation: int) -> None:
        assert self.backend is not None and self.access_token
        try:
            record = await self.backend.update_avatar(request, self.access_token)
        except BackendSyncFailure as exc:
            logger.warning(f"[Session {self.session_id}] Backend sync failed: {exc}")
            warning = exc.to_avatar_error(rpm_id=request.rpm_id)
            self._emit("backend_sync", ok=False, warning=warning.model_dump(by_alias=True, mode="json"))
            return

        logger.info(f"[Session {self.session_id}] Avatar synced to backend")
        candidate = self._adopt_backend_record(record, generation)
        self._emit("backend_sync", ok=True)
        if candidate is not None and candidate.status in _PENDING_STATUSES and generation == self._generation:
            processing_id = record.get("processingId") if record else None
            self.start_status_polling(str(processing_id) if processing_id else request.rpm_id)

    def _adopt_backend_record(
        self,
        record: Optional[Dict[str, Any]],
        generation: int,
        *,
        allow_same_version: bool = False,
    ) -> Optional[AvatarState]:
        """Map ``record`` and take it over when it supersedes the local avatar.

        Returns the mapped record (adopted or not) so callers can look at
        its processing status.
        """

        if not record or generation != self._generation:
            return None
        candidate = map_avatar_response(record)
        if self.avatar is None or candidate.rpm_id is None:
            return candidate
        if candidate.version < self.avatar.version or (
            candidate.version == self.avatar.version and not allow_same_version
        ):
            return candidate
        if not validate_avatar_data(candidate).is_valid:
            logger.warning(f"[Session {self.session_id}] Backend record failed validation; keeping local avatar")
            return candidate
        self.avatar = candidate
        self._emit_avatar_ready(fallback=False)
        return candidate

    async def fetch_avatar(self) -> Optional[AvatarState]:
        """Read the caller's avatar from the backend, falling back to the local copy.

        A newer backend record replaces the session avatar once the session
        is complete. Returns ``None`` when the backend reports no avatar.
        Raises ``BackendSyncFailure`` only when the backend fails and there
        is nothing cached to fall back on.
        """

        generation = self._generation
        try:
            if self.backend is None or not self.access_token:
                raise BackendSyncFailure("Backend is not configured for this session", step="fetch")
            body = await self.backend.fetch_avatar(self.access_token)
            if body is None:
                raise BackendSyncFailure("Failed to fetch avatar data", step="fetch")
        except BackendSyncFailure as exc:
            logger.warning(f"[Session {self.session_id}] Avatar fetch failed: {exc}")
            cached = self.avatar or await self._stored_avatar()
            if cached is None:
                raise
            self._emit("avatar_fetched", source="cache", rpm_id=cached.rpm_id, version=cached.version)
            return cached

        record = body.get("avatar")
        if not isinstance(record, dict) or body.get("hasAvatar") is False:
            logger.info(f"[Session {self.session_id}] Backend has no avatar for this user")
            self._emit("avatar_fetched", source="backend", rpm_id=None, version=None)
            return None

        if self.state is SessionState.COMPLETE:
            candidate = self._adopt_backend_record(record, generation)
        else:
            candidate = map_avatar_response(record)
        if candidate is None:
            return None
        self._emit("avatar_fetched", source="backend", rpm_id=candidate.rpm_id, version=candidate.version)
        if candidate.status in _PENDING_STATUSES:
            self.start_status_polling(candidate.rpm_id)
        return candidate

    # -- status polling ----------------------------------------------------------

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_status_polling(self, processing_id: Optional[str] = None) -> bool:
        """Poll the backend while it processes the avatar; one poller per session."""

        if self.backend is None or not self.access_token:
            return False
        if self.is_polling:
            return False
        task = asyncio.create_task(self._poll_status(self._generation, processing_id))
        self._poll_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    def stop_status_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
            logger.info(f"[Session {self.session_id}] Status polling stopped")
        self._poll_task = None

    async def _poll_status(self, generation: int, processing_id: Optional[str]) -> None:
        assert self.backend is not None and self.access_token
        settings = self.settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.status_poll_timeout_s
        failures = 0

        await asyncio.sleep(settings.status_poll_initial_delay_s)
        while generation == self._generation:
            if loop.time() >= deadline:
                logger.warning(f"[Session {self.session_id}] Status polling gave up after {settings.status_poll_timeout_s:.0f}s")
                self._emit("avatar_status", ok=False, status="timeout", progress=None)
                return
            try:
                body = await self.backend.avatar_status(self.access_token, processing_id)
            except BackendSyncFailure as exc:
                failures += 1
                logger.warning(
                    f"[Session {self.session_id}] Status check failed ({failures}/{settings.status_poll_max_attempts}): {exc}"
                )
                if failures >= settings.status_poll_max_attempts:
                    failure = BackendSyncFailure(
                        "Avatar status monitoring failed", code="STATUS_CHECK_FAILED", step="status"
                    )
                    warning = failure.to_avatar_error(rpm_id=processing_id)
                    self._emit(
                        "avatar_status",
                        ok=False,
                        status="failed",
                        progress=None,
                        warning=warning.model_dump(by_alias=True, mode="json"),
                    )
                    return
            else:
                if generation != self._generation:
                    return
                status = AvatarStatus(normalize_status(body.get("status")))
                self._emit("avatar_status", ok=True, status=status.value, progress=_progress(body.get("progress")))
                if status is AvatarStatus.COMPLETE:
                    record = body.get("avatar")
                    if isinstance(record, dict):
                        self._adopt_backend_record(record, generation, allow_same_version=True)
                    return
                if status not in _PENDING_STATUSES:
                    if status is AvatarStatus.ERROR:
                        logger.warning(f"[Session {self.session_id}] Backend reported avatar processing error")
                    return
            await asyncio.sleep(settings.status_poll_interval_s)

    async def drain_background_tasks(self) -> None:
        """Wait for detached backend work; used at shutdown and in tests.

        Loops because a finishing sync may start a status poller.
        """

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
