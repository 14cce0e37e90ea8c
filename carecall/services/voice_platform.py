"""
Voice Platform Client.

Thin async wrapper over the VAPI REST API: place an outbound call with
per-call assistant variables, read a call back (status, transcript), and
end a call in progress.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from carecall.config import Settings, get_settings
from carecall.errors import VoicePlatformError
from carecall.logging_config import get_logger

logger = get_logger(__name__)


class VoicePlatformClient:
    """Async VAPI client. One instance is shared per process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.vapi_base_url,
                timeout=self._settings.voice_request_timeout_seconds,
                headers={
                    "Authorization": f"Bearer {self._settings.vapi_api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "voice_platform_http_error",
                path=path,
                status=e.response.status_code,
                body=e.response.text[:500],
            )
            raise VoicePlatformError(
                f"{method} {path} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("voice_platform_transport_error", path=path, error=str(e))
            raise VoicePlatformError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return {}
        return response.json()

    async def place_call(self, phone: str, context: dict[str, Any]) -> str:
        """
        Ask the platform to dial ``phone``.

        Returns:
            The platform's call id (the correlation key for webhooks).
        """
        payload = {
            "assistantId": self._settings.vapi_assistant_id,
            "phoneNumberId": self._settings.vapi_phone_number_id,
            "customer": {"number": phone},
            "assistantOverrides": {"variableValues": context},
        }
        data = await self._request("POST", "/call/phone", json=payload)

        external_call_id = data.get("id")
        if not external_call_id:
            raise VoicePlatformError("Voice platform accepted the call without returning an id")

        logger.info("voice_call_placed", external_call_id=external_call_id, phone=phone)
        return external_call_id

    async def get_call(self, external_call_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/call/{external_call_id}")

    async def get_transcript(self, external_call_id: str) -> str | None:
        """Transcript of a finished call, or None when unavailable."""
        try:
            data = await self.get_call(external_call_id)
        except VoicePlatformError as e:
            logger.warning("transcript_fetch_failed", external_call_id=external_call_id, error=str(e))
            return None
        return data.get("transcript") or None

    async def end_call(self, external_call_id: str) -> dict[str, Any]:
        logger.info("voice_call_end_requested", external_call_id=external_call_id)
        return await self._request("POST", f"/call/{external_call_id}/end")

    async def health_check(self) -> dict[str, Any]:
        """Reachability of the platform and the configured assistant."""
        if not self._settings.vapi_api_key:
            return {"status": "unhealthy", "error": "VAPI API key not configured"}
        try:
            await self._request("GET", f"/assistant/{self._settings.vapi_assistant_id}")
        except VoicePlatformError as e:
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy", "assistant_id": self._settings.vapi_assistant_id}
