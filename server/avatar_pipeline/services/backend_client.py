"""HTTP client for the backend that durably stores avatar records."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..models.schemas import UpdateAvatarRequest
from .errors import BackendSyncFailure

logger = logging.getLogger(__name__)

UPDATE_AVATAR_PATH = "/users/me/avatar/update"
AVATAR_PATH = "/users/me/avatar"
AVATAR_STATUS_PATH = "/users/me/avatar/status"


class AvatarBackendClient:
    """Talks to the avatar endpoints of the backend; every failure is a ``BackendSyncFailure``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        raw_base = (base_url or "").strip()
        if not raw_base.startswith(("http://", "https://")):
            raise ValueError("AVATAR_BACKEND_URL must include http/https scheme")
        self.base_url = raw_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            return body["message"]
        return f"HTTP {response.status_code}: Failed to sync avatar"

    async def update_avatar(self, request: UpdateAvatarRequest, access_token: str) -> Optional[Dict[str, Any]]:
        """POST the avatar and return the backend's JSON body, if it sent one."""

        url = f"{self.base_url}{UPDATE_AVATAR_PATH}"
        payload = {
            "rpmUrl": request.rpm_url,
            "configuration": request.configuration.model_dump(by_alias=True, mode="json"),
        }
        logger.info("Syncing avatar %s to backend at %s", request.rpm_id, url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, headers=self._headers(access_token), json=payload)
        except httpx.HTTPError as exc:
            raise BackendSyncFailure(f"Backend request failed: {exc}", step="sync") from exc

        if not response.is_success:
            raise BackendSyncFailure(
                self._error_message(response), status_code=response.status_code, step="sync"
            )

        return self._json_body(response)

    async def fetch_avatar(self, access_token: str) -> Optional[Dict[str, Any]]:
        """GET the caller's stored avatar record envelope."""

        response = await self._get(AVATAR_PATH, access_token, step="fetch")
        return self._json_body(response)

    async def avatar_status(
        self, access_token: str, processing_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """GET the processing status of the caller's avatar."""

        params = {"processingId": processing_id or ""}
        response = await self._get(AVATAR_STATUS_PATH, access_token, step="status", params=params)
        body = self._json_body(response)
        if body is None:
            raise BackendSyncFailure("Failed to get avatar status", status_code=response.status_code, step="status")
        return body

    async def _get(
        self,
        path: str,
        access_token: str,
        *,
        step: str,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        logger.debug("GET %s", url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._headers(access_token), params=params)
        except httpx.HTTPError as exc:
            raise BackendSyncFailure(f"Backend request failed: {exc}", step=step) from exc

        if not response.is_success:
            raise BackendSyncFailure(
                self._error_message(response), status_code=response.status_code, step=step
            )
        return response

    @staticmethod
    def _json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        # Some deployments wrap payloads as {"success": ..., "data": {...}}.
        if isinstance(data.get("data"), dict) and "success" in data:
            return data["data"]
        return data
