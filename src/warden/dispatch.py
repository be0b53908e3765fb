"""
Outbound event delivery: webhooks and connected event sockets.

Delivery is fire-and-forget. Failures are logged and never retried, and
never surface to the session that produced the event.
"""

import asyncio
from typing import Any, Optional

import httpx
from starlette.websockets import WebSocket

from warden.logger import get_logger
from warden.utils import to_serializable

logger = get_logger(__name__)

DEFAULT_WEBHOOK_TIMEOUT = 10.0


class EventDispatcher:
    """
    Fans session events out to the session's webhook and to every client
    connected on the events WebSocket.
    """

    def __init__(
        self,
        default_webhook_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
    ):
        self.default_webhook_url = default_webhook_url
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout
        self._sockets: set[WebSocket] = set()
        self._pending: set[asyncio.Task] = set()

    # -- Sockets -------------------------------------------------------------

    def add_socket(self, websocket: WebSocket) -> None:
        self._sockets.add(websocket)

    def remove_socket(self, websocket: WebSocket) -> None:
        self._sockets.discard(websocket)

    @property
    def socket_count(self) -> int:
        return len(self._sockets)

    # -- Emission ------------------------------------------------------------

    def emit(self, event: str, payload: Any) -> None:
        """Broadcast an event to every connected socket."""
        if not self._sockets:
            return
        message = {"event": event, "data": to_serializable(payload)}
        self._spawn(self._broadcast(message))

    def call_webhook(
        self,
        event: str,
        payload: Any,
        session: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> None:
        """POST an event to the session's webhook, or the server default."""
        url = webhook_url or self.default_webhook_url
        if not url:
            return

        body = to_serializable(payload)
        if not isinstance(body, dict):
            body = {"data": body}
        body = {**body, "event": event}
        if session is not None:
            body.setdefault("session", session)

        self._spawn(self._post(url, body))

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # -- Internal ------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def _post(self, url: str, body: dict[str, Any]) -> None:
        try:
            response = await self._client().post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            session = body.get("session", "-")
            logger.warning(f"[{session}] Webhook '{body['event']}' to {url} failed: {e}")

    async def _broadcast(self, message: dict[str, Any]) -> None:
        for websocket in list(self._sockets):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping event socket: {e}")
                self._sockets.discard(websocket)
