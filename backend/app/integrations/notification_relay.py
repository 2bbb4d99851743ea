import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from ..config import settings
from ..notifications import NotificationRequest


TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


class NotificationRelayError(Exception):
    pass


class NotificationRelayClient:
    """Forwards notification requests to the external dispatcher service."""

    def __init__(
        self,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.sleep_fn = sleep_fn
        timeout_sec = float(settings.NOTIFICATIONS_RELAY_TIMEOUT_SEC)
        self.timeout = httpx.Timeout(connect=timeout_sec, read=timeout_sec, write=timeout_sec, pool=timeout_sec)

    def _resolve_url(self) -> str:
        url = settings.NOTIFICATIONS_RELAY_URL.strip()
        if not url:
            raise NotificationRelayError("missing_relay_url")
        return url

    async def send(self, request: NotificationRequest) -> None:
        url = self._resolve_url()
        max_attempts = max(0, int(settings.NOTIFICATIONS_RELAY_MAX_RETRIES)) + 1
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(url, json=request.as_payload())

                if response.status_code in TRANSIENT_STATUSES and attempt < max_attempts - 1:
                    await self.sleep_fn(0.3)
                    continue

                if response.status_code >= 400:
                    raise NotificationRelayError(f"relay_status_{response.status_code}")
                return
            except NotificationRelayError as exc:
                last_error = exc
                break
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                last_error = exc
                if attempt < max_attempts - 1:
                    await self.sleep_fn(0.3)
                    continue

        raise NotificationRelayError("relay_send_failed") from last_error


notification_relay_client = NotificationRelayClient()
