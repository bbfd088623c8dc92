"""Approval channels: where lifecycle events are published to approvers.

A channel only has to implement ``publish(event)``. The lifecycle talks to a
single :class:`BroadcastChannel` that fans out to every configured channel and
logs (never raises) per-channel failures, so a flaky webhook cannot block a
state transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set
from urllib.parse import quote

import httpx
from starlette.websockets import WebSocket, WebSocketState

from tempadmin.models.events import ChannelEvent, NewRequestEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApprovalChannel(Protocol):
    async def publish(self, event: ChannelEvent) -> None:
        ...


class LoggingChannel:
    """Writes every event to the log. Always configured."""

    async def publish(self, event: ChannelEvent) -> None:
        logger.info(f"channel.{event.type}", extra={"extra": {"request_id": event.id}})


class WebhookChannel:
    """POSTs each event as JSON to an automation webhook (e.g. Make.com).

    ``new_request`` payloads also carry ready-made ``approveUrl``/``denyUrl``
    links to the approval endpoint so the receiving scenario can email them.
    """

    def __init__(
        self,
        url: str,
        *,
        app_server_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.app_server_url = app_server_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def approval_url(self, token: str) -> str:
        return f"{self.app_server_url}/approve?token={quote(token, safe='')}"

    def build_payload(self, event: ChannelEvent) -> Dict[str, Any]:
        payload = event.to_message()
        if isinstance(event, NewRequestEvent):
            payload["approveUrl"] = self.approval_url(event.approve_token)
            payload["denyUrl"] = self.approval_url(event.deny_token)
        return payload

    async def publish(self, event: ChannelEvent) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=self.build_payload(event))
            response.raise_for_status()
        logger.info(
            "webhook.sent",
            extra={"extra": {"type": event.type, "request_id": event.id, "status_code": response.status_code}},
        )


class WebSocketHub:
    """Tracks authenticated dashboard sockets and broadcasts events to them."""

    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def register(self, websocket: WebSocket) -> None:
        self._clients.add(websocket)

    def unregister(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)

    async def send(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        if websocket.client_state != WebSocketState.CONNECTED:
            self.unregister(websocket)
            return False
        try:
            await websocket.send_json(message)
            return True
        except (RuntimeError, OSError) as exc:
            logger.warning(f"Dropping dashboard socket after send failure: {exc}")
            self.unregister(websocket)
            return False

    async def broadcast(self, message: Dict[str, Any]) -> int:
        sent = 0
        for websocket in list(self._clients):
            if await self.send(websocket, message):
                sent += 1
        logger.debug(f"Broadcast {message.get('type')} to {sent} dashboard client(s)")
        return sent

    async def publish(self, event: ChannelEvent) -> None:
        await self.broadcast(event.to_message())


class BroadcastChannel:
    """Fans an event out to several channels concurrently."""

    def __init__(self, channels: Iterable[ApprovalChannel] = ()):
        self.channels: List[ApprovalChannel] = list(channels)

    def add(self, channel: ApprovalChannel) -> None:
        self.channels.append(channel)

    async def publish(self, event: ChannelEvent) -> None:
        results = await asyncio.gather(
            *(channel.publish(event) for channel in self.channels),
            return_exceptions=True,
        )
        for channel, result in zip(self.channels, results):
            if isinstance(result, BaseException):
                logger.error(
                    "channel.publish_failed",
                    exc_info=result,
                    extra={
                        "extra": {
                            "channel": type(channel).__name__,
                            "type": event.type,
                            "request_id": event.id,
                        }
                    },
                )
