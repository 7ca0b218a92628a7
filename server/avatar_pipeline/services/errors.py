"""Error taxonomy for the avatar creation pipeline."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models.schemas import AvatarError, AvatarErrorType

RETRY = "retry"
SKIP = "skip"


class AvatarPipelineError(RuntimeError):
    """Base class; every subclass knows how to present itself to the user."""

    error_type: AvatarErrorType = AvatarErrorType.UNKNOWN_ERROR
    code: str = "UNKNOWN"
    user_message: str = "Something went wrong with your avatar"
    persian_message: Optional[str] = "مشکلی در ساخت آواتار شما پیش آمد"
    retryable: bool = True
    suggested_action: Optional[str] = RETRY
    fallback_options: List[str] = [RETRY, SKIP]
    # Halts forward progress of the session instead of degrading gracefully.
    fatal: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.step = step
        self.details = details

    def to_avatar_error(self, rpm_id: Optional[str] = None) -> AvatarError:
        return AvatarError(
            type=self.error_type.value,
            code=self.code,
            message=self.message,
            user_message=self.user_message,
            persian_message=self.persian_message,
            step=self.step,
            rpm_id=rpm_id,
            details=self.details,
            retryable=self.retryable,
            suggested_action=self.suggested_action,
            fallback_options=list(self.fallback_options) or None,
        )


class MalformedPayload(AvatarPipelineError):
    """Inbound envelope could not be turned into an avatar request."""

    error_type = AvatarErrorType.INVALID_AVATAR_DATA
    code = "MALFORMED_PAYLOAD"
    user_message = "The avatar creator sent an incomplete avatar. Please try again."
    persian_message = "اطلاعات آواتار ناقص دریافت شد. لطفا دوباره تلاش کنید."


class ValidationFailure(AvatarPipelineError):
    """Normalized avatar data failed the integrity check."""

    error_type = AvatarErrorType.VALIDATION_ERROR
    code = "VALIDATION_FAILED"
    user_message = "Your avatar could not be verified. Please try again."
    persian_message = "آواتار شما تایید نشد. لطفا دوباره تلاش کنید."

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if errors:
            details = {**details, "errors": list(errors)}
        super().__init__(message, details=details or None, **kwargs)
        self.errors = list(errors or [])


class LocalPersistenceFailure(AvatarPipelineError):
    error_type = AvatarErrorType.STORAGE_ERROR
    code = "LOCAL_PERSISTENCE_FAILED"
    user_message = "Failed to save avatar. Please try again."
    persian_message = "ذخیره آواتار ناموفق بود. لطفا دوباره تلاش کنید."
    fatal = True


class BackendSyncFailure(AvatarPipelineError):
    """Backend did not accept the avatar; the local copy is still valid."""

    error_type = AvatarErrorType.NETWORK_ERROR
    code = "BACKEND_SYNC_FAILED"
    user_message = "Avatar saved locally. Will sync when connection is available."
    persian_message = "آواتار روی دستگاه ذخیره شد و پس از اتصال همگام‌سازی می‌شود."
    suggested_action = None
    fallback_options: List[str] = []

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class SessionTimeout(AvatarPipelineError):
    error_type = AvatarErrorType.TIMEOUT_ERROR
    code = "SESSION_TIMEOUT"
    user_message = "Avatar creator is taking too long to load. Please check your connection."
    persian_message = "بارگذاری سازنده آواتار بیش از حد طول کشید. اتصال خود را بررسی کنید."


class ProviderReportedError(AvatarPipelineError):
    """The embedded creation surface reported its own failure."""

    error_type = AvatarErrorType.RPM_ERROR
    code = "PROVIDER_ERROR"
    user_message = "Avatar creation failed"
    persian_message = "ساخت آواتار ناموفق بود"

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        # Provider text is what the user sees.
        self.user_message = message


class InvalidResponse(AvatarPipelineError):
    """Backend returned nothing that could be mapped to an avatar record."""

    error_type = AvatarErrorType.PROCESSING_FAILED
    code = "INVALID_RESPONSE"


class SessionTransitionError(AvatarPipelineError):
    """A user action was requested from a state that does not allow it."""

    error_type = AvatarErrorType.CREATION_FAILED
    code = "INVALID_TRANSITION"
    retryable = False
    suggested_action = None
    fallback_options: List[str] = []
