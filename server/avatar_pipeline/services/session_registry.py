"""Process-wide registry of live creation sessions."""
from __future__ import annotations

import logging
import uuid
from typing import Callable, Dict, Optional

from ..config import Settings, get_settings
from .backend_client import AvatarBackendClient
from .creation_session import CreationSessionController
from .fallback import FallbackProvider
from .storage import KeyValueStore, open_store

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store_factory: Optional[Callable[[], KeyValueStore]] = None,
        backend: Optional[AvatarBackendClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.sessions: Dict[str, CreationSessionController] = {}
        self._store_factory = store_factory or (lambda: open_store(self.settings.store_path))
        self._store: Optional[KeyValueStore] = None
        self._backend = backend
        self._fallback = FallbackProvider(self.settings)

    @property
    def store(self) -> KeyValueStore:
        # Opened lazily so importing the app never touches the filesystem.
        if self._store is None:
            self._store = self._store_factory()
        return self._store

    @property
    def fallback(self) -> FallbackProvider:
        return self._fallback

    def _backend_client(self) -> Optional[AvatarBackendClient]:
        if self._backend is None and self.settings.backend_base_url:
            self._backend = AvatarBackendClient(
                self.settings.backend_base_url, timeout=self.settings.backend_timeout_s
            )
        return self._backend

    def create(
        self,
        *,
        access_token: Optional[str] = None,
        gender: Optional[str] = None,
        platform: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> CreationSessionController:
        session_id = session_id or uuid.uuid4().hex
        controller = CreationSessionController(
            session_id,
            self.settings,
            self.store,
            fallback=self._fallback,
            backend=self._backend_client(),
            access_token=access_token,
            gender=gender,
            platform=platform,
        )
        self.sessions[session_id] = controller
        logger.info(f"[Session {session_id}] Registered creation session")
        return controller

    def get(self, session_id: str) -> Optional[CreationSessionController]:
        return self.sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        controller = self.sessions.pop(session_id, None)
        if controller is not None:
            controller.cancel()
            logger.info(f"[Session {session_id}] Removed creation session")

    async def shutdown(self) -> None:
        for session_id in list(self.sessions):
            controller = self.sessions.pop(session_id)
            controller.cancel()
            await controller.drain_background_tasks()


registry = SessionRegistry()
