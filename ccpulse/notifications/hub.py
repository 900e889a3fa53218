"""WebSocket connection hub.

Owns the live client connections, answers the subscription control protocol
and performs the actual socket writes on behalf of the notification manager.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from ccpulse.date_utils import format_iso, utc_now
from ccpulse.errors import DeliveryFailure

if TYPE_CHECKING:
    from ccpulse.notifications.manager import NotificationManager

logger = logging.getLogger("ccpulse.hub")


def build_envelope(event_type: str, data: Any) -> dict[str, Any]:
    return {"type": event_type, "data": data, "timestamp": format_iso(utc_now())}


@dataclass
class ClientConnection:
    id: str
    websocket: WebSocket
    connected_at: datetime
    messages_sent: int = 0


class ConnectionHub:
    """Registry of connected WebSocket clients."""

    def __init__(self, send_timeout_seconds: float = 5.0):
        self.send_timeout_seconds = float(send_timeout_seconds)
        self._connections: dict[str, ClientConnection] = {}
        self._notifications: Optional[NotificationManager] = None

    def bind(self, notifications: "NotificationManager") -> None:
        self._notifications = notifications

    @property
    def notifications(self) -> "NotificationManager":
        if self._notifications is None:
            raise RuntimeError("ConnectionHub is not bound to a NotificationManager")
        return self._notifications

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one client until it disconnects."""
        connection_id = await self.connect(websocket)
        try:
            await self.send(
                connection_id,
                build_envelope("connection", {"clientId": connection_id, "serverTime": format_iso(utc_now())}),
            )
            while True:
                raw = await websocket.receive_text()
                await self.handle_control(connection_id, raw)
        except WebSocketDisconnect as exc:
            logger.info("Client %s disconnected (code=%s)", connection_id, exc.code)
        except DeliveryFailure as exc:
            logger.warning("%s", exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Connection %s closed after error: %s", connection_id, exc)
        finally:
            self.disconnect(connection_id)

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = f"client_{uuid.uuid4().hex[:12]}"
        self._connections[connection_id] = ClientConnection(
            id=connection_id,
            websocket=websocket,
            connected_at=utc_now(),
        )
        logger.info("Client %s connected (%d total)", connection_id, len(self._connections))
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if self._notifications is not None:
            self._notifications.unsubscribe_all(connection_id)
        if connection is not None:
            logger.info("Client %s removed (%d remaining)", connection_id, len(self._connections))

    async def drop(self, connection_id: str) -> None:
        """Forget a connection whose socket is broken and try to close it."""
        connection = self._connections.get(connection_id)
        self.disconnect(connection_id)
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.websocket.close(code=1011)

    async def handle_control(self, connection_id: str, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed message from %s", connection_id)
            return
        if not isinstance(payload, dict):
            logger.warning("Ignoring non-object message from %s", connection_id)
            return

        message_type = payload.get("type")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        channel = payload.get("channel") or data.get("channel")

        if message_type == "ping":
            await self.send(connection_id, build_envelope("pong", {"clientId": connection_id}))
        elif message_type in ("subscribe", "unsubscribe"):
            if not isinstance(channel, str) or not channel.strip():
                logger.warning("Ignoring %s without a channel from %s", message_type, connection_id)
                return
            channel = channel.strip()
            if message_type == "subscribe":
                self.notifications.subscribe(channel, connection_id)
                reply = "subscription_confirmed"
            else:
                self.notifications.unsubscribe(channel, connection_id)
                reply = "unsubscription_confirmed"
            await self.send(
                connection_id,
                build_envelope(reply, {
                    "channel": channel,
                    "subscriptions": self.notifications.channels_for(connection_id),
                }),
            )
        else:
            logger.warning("Ignoring unknown message type %r from %s", message_type, connection_id)

    async def send(self, connection_id: str, message: dict[str, Any]) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise DeliveryFailure(connection_id, "unknown connection")
        try:
            await asyncio.wait_for(connection.websocket.send_json(message), timeout=self.send_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DeliveryFailure(connection_id, "send timed out") from exc
        except Exception as exc:  # noqa: BLE001
            raise DeliveryFailure(connection_id, exc) from exc
        connection.messages_sent += 1

    async def close_all(self) -> None:
        connections = list(self._connections.values())
        for connection in connections:
            with contextlib.suppress(Exception):
                await connection.websocket.close(code=1001)
            self.disconnect(connection.id)
        if connections:
            logger.info("Closed %d live connection(s)", len(connections))

    def connection_ids(self) -> list[str]:
        return list(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def stats(self) -> dict[str, Any]:
        return {
            "clientCount": len(self._connections),
            "clients": [
                {
                    "id": connection.id,
                    "connectedAt": format_iso(connection.connected_at),
                    "messagesSent": connection.messages_sent,
                    "subscriptions": (
                        self._notifications.channels_for(connection.id) if self._notifications else []
                    ),
                }
                for connection in self._connections.values()
            ],
        }
