"""Configuration helpers for the avatar creation service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple


def _env_flag(name: str, *, default: bool) -> bool:
    """Return True if the environment flag is set to a truthy value."""

    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Instances are passed explicitly into the pipeline components; nothing in
    ``services`` reads the environment on its own.
    """

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Embedded creation surface
    provider_subdomain: str = os.getenv("AVATAR_PROVIDER_SUBDOMAIN", "demo")
    provider_domains: Tuple[str, ...] = _env_list(
        "AVATAR_PROVIDER_DOMAINS", "readyplayer.me,iranverse.io"
    )
    bare_url_strict: bool = _env_flag("AVATAR_BARE_URL_STRICT", default=True)
    load_timeout_s: float = _env_float("AVATAR_LOAD_TIMEOUT_S", 30.0) or 30.0
    creation_timeout_s: Optional[float] = _env_float("AVATAR_CREATION_TIMEOUT_S", None)

    # Backend that durably stores avatar records
    backend_base_url: Optional[str] = os.getenv("AVATAR_BACKEND_URL")
    backend_timeout_s: float = _env_float("AVATAR_BACKEND_TIMEOUT_S", 15.0) or 15.0

    # Polling of GET /users/me/avatar/status while the backend processes a record
    status_poll_initial_delay_s: float = _env_float("AVATAR_STATUS_POLL_INITIAL_DELAY_S", 2.0) or 0.0
    status_poll_interval_s: float = _env_float("AVATAR_STATUS_POLL_INTERVAL_S", 4.0) or 0.0
    status_poll_max_attempts: int = int(_env_float("AVATAR_STATUS_POLL_MAX_ATTEMPTS", 5.0) or 5)
    status_poll_timeout_s: float = _env_float("AVATAR_STATUS_POLL_TIMEOUT_S", 60.0) or 60.0

    # Local key-value store holding the latest resolved avatar URL
    store_path: str = os.getenv("AVATAR_STORE_PATH", "data/avatar_store.sqlite3")

    fallback_male_url: str = os.getenv(
        "AVATAR_FALLBACK_MALE_URL", "https://cdn.iranverse.io/avatars/defaults/male.glb"
    )
    fallback_female_url: str = os.getenv(
        "AVATAR_FALLBACK_FEMALE_URL", "https://cdn.iranverse.io/avatars/defaults/female.glb"
    )
    fallback_non_binary_url: str = os.getenv(
        "AVATAR_FALLBACK_NON_BINARY_URL",
        "https://cdn.iranverse.io/avatars/defaults/non-binary.glb",
    )
    fallback_ttl_hours: float = _env_float("AVATAR_FALLBACK_TTL_HOURS", 24.0) or 24.0

    # Frame options forwarded to the creation surface
    frame_options: Dict[str, object] = field(
        default_factory=lambda: {
            "clearCache": True,
            "bodyType": "halfbody",
            "quickStart": False,
            "language": "en",
        }
    )

    @property
    def fallback_avatars(self) -> Dict[str, str]:
        return {
            "male": self.fallback_male_url,
            "female": self.fallback_female_url,
            "non-binary": self.fallback_non_binary_url,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
