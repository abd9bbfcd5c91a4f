"""
Push notification delivery.

``OneSignalSender`` posts to the OneSignal REST API. Transport failures and
non-2xx responses raise ``DependencyError``, as does a 2xx reply whose body
is not a JSON object.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from pushlab.config import get_settings
from pushlab.core.exceptions import DependencyError

logger = structlog.get_logger()


@dataclass
class DeliveryResult:
    id: Optional[str]
    status_code: int
    recipients: int = 0


class PushSender(Protocol):
    async def send(
        self, device_handles: List[str], title: str, body: str, data: Dict[str, Any]
    ) -> DeliveryResult: ...


class OneSignalSender:
    def __init__(
        self,
        app_id: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.app_id = app_id if app_id is not None else settings.ONESIGNAL_APP_ID
        self.api_key = api_key if api_key is not None else settings.ONESIGNAL_API_KEY
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.ONESIGNAL_API_URL,
            timeout=timeout or settings.PUSH_TIMEOUT_SECONDS,
        )

    async def send(
        self, device_handles: List[str], title: str, body: str, data: Dict[str, Any]
    ) -> DeliveryResult:
        payload = {
            "app_id": self.app_id,
            "include_player_ids": list(device_handles),
            "headings": {"en": title},
            "contents": {"en": body},
            "data": data,
        }
        headers = {"Authorization": f"Basic {self.api_key}"}

        try:
            response = await self._client.post("/notifications", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error("push_transport_failed", recipients=len(device_handles), error=str(e))
            raise DependencyError(f"Push delivery failed: {e}")

        if response.status_code >= 400:
            logger.error(
                "push_rejected",
                status_code=response.status_code,
                recipients=len(device_handles),
                body=response.text[:500],
            )
            raise DependencyError(
                f"Push delivery rejected with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body_json = response.json() if response.content else {}
        except ValueError as e:
            logger.error(
                "push_response_unreadable",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise DependencyError(
                f"Push delivery returned an unreadable response: {e}",
                status_code=response.status_code,
            )
        if not isinstance(body_json, dict):
            raise DependencyError(
                "Push delivery returned an unexpected response body",
                status_code=response.status_code,
            )

        return DeliveryResult(
            id=body_json.get("id"),
            status_code=response.status_code,
            recipients=body_json.get("recipients", len(device_handles)),
        )

    async def close(self) -> None:
        await self._client.aclose()


_sender: Optional[OneSignalSender] = None


def get_push_sender() -> PushSender:
    """Dependency returning the process-wide OneSignal sender."""
    global _sender
    if _sender is None:
        _sender = OneSignalSender()
    return _sender


async def close_push_sender() -> None:
    global _sender
    if _sender:
        await _sender.close()
        _sender = None
