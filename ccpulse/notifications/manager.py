"""Channel subscriptions and best-effort fan-out to live connections."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Callable, Optional

from ccpulse.date_utils import format_iso, utc_now
from ccpulse.errors import DeliveryFailure
from ccpulse.models import Message, StateChangeEvent, Subscription
from ccpulse.notifications.hub import ConnectionHub, build_envelope
from ccpulse.observability import record_delivery_failure, record_state_change
from ccpulse.settings import MonitorSettings

logger = logging.getLogger("ccpulse.notifications")

CONVERSATION_UPDATES_CHANNEL = "conversation_updates"

STATE_CHANGE_EVENT = "conversation_state_change"
NEW_MESSAGE_EVENT = "new_message"
UNREACHABLE_EVENT = "conversation_unreachable"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class NotificationManager:
    """Tracks channel subscriptions and publishes envelopes through the hub.

    Delivery is fire-and-forget per subscriber: a failed write tears down that
    one connection and is never retried or queued.
    """

    def __init__(
        self,
        hub: ConnectionHub,
        history_size: int = 1000,
        clock: Callable[[], Any] = utc_now,
    ):
        self._hub = hub
        self._clock = clock
        self._subscriptions: dict[str, dict[str, Subscription]] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=max(1, int(history_size)))
        self.metrics = {"published": 0, "delivered": 0, "failed": 0}
        hub.bind(self)

    @classmethod
    def from_settings(cls, hub: ConnectionHub, settings: MonitorSettings) -> "NotificationManager":
        return cls(hub, history_size=settings.notification_history_size)

    # ── Subscriptions ──────────────────────────────────────────────

    def subscribe(self, channel: str, connection_id: str) -> Subscription:
        members = self._subscriptions.setdefault(channel, {})
        existing = members.get(connection_id)
        if existing is not None:
            return existing
        subscription = Subscription(connectionId=connection_id, channel=channel, createdAt=self._clock())
        members[connection_id] = subscription
        logger.debug("Client %s subscribed to %s", connection_id, channel)
        return subscription

    def unsubscribe(self, channel: str, connection_id: str) -> bool:
        members = self._subscriptions.get(channel)
        if not members or connection_id not in members:
            return False
        del members[connection_id]
        if not members:
            del self._subscriptions[channel]
        logger.debug("Client %s unsubscribed from %s", connection_id, channel)
        return True

    def unsubscribe_all(self, connection_id: str) -> list[str]:
        removed = [channel for channel, members in self._subscriptions.items() if connection_id in members]
        for channel in removed:
            self.unsubscribe(channel, connection_id)
        return removed

    def subscribers(self, channel: str) -> set[str]:
        return set(self._subscriptions.get(channel, {}))

    def channels_for(self, connection_id: str) -> list[str]:
        return sorted(channel for channel, members in self._subscriptions.items() if connection_id in members)

    # ── Publishing ─────────────────────────────────────────────────

    async def publish(self, channel: str, event_type: str, data: dict[str, Any]) -> int:
        """Deliver one envelope to every subscriber of `channel`; return the delivered count."""
        envelope = build_envelope(event_type, data)
        self._record(channel, envelope)
        self.metrics["published"] += 1

        targets = list(self._subscriptions.get(channel, {}))
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._hub.send(connection_id, envelope) for connection_id in targets),
            return_exceptions=True,
        )
        delivered = 0
        for connection_id, result in zip(targets, results):
            if isinstance(result, BaseException):
                await self._drop_connection(connection_id, result)
            else:
                delivered += 1
        self.metrics["delivered"] += delivered
        return delivered

    async def notify_state_change(self, event: StateChangeEvent) -> int:
        record_state_change(
            event.previousState.value if event.previousState else None,
            event.newState.value,
        )
        data = event.model_dump(mode="json")
        delivered = await self.publish(CONVERSATION_UPDATES_CHANNEL, STATE_CHANGE_EVENT, data)
        delivered += await self.publish(conversation_channel(event.conversationId), STATE_CHANGE_EVENT, data)
        return delivered

    async def notify_new_message(self, conversation_id: str, message: Message, message_count: int) -> int:
        data = {
            "conversationId": conversation_id,
            "message": message.model_dump(mode="json"),
            "messageCount": message_count,
        }
        delivered = await self.publish(CONVERSATION_UPDATES_CHANNEL, NEW_MESSAGE_EVENT, data)
        delivered += await self.publish(conversation_channel(conversation_id), NEW_MESSAGE_EVENT, data)
        return delivered

    async def notify_unreachable(self, conversation_id: str, reason: str) -> int:
        data = {"conversationId": conversation_id, "reason": reason}
        delivered = await self.publish(CONVERSATION_UPDATES_CHANNEL, UNREACHABLE_EVENT, data)
        delivered += await self.publish(conversation_channel(conversation_id), UNREACHABLE_EVENT, data)
        return delivered

    async def _drop_connection(self, connection_id: str, error: BaseException) -> None:
        if not isinstance(error, DeliveryFailure):
            error = DeliveryFailure(connection_id, error)
        self.metrics["failed"] += 1
        record_delivery_failure()
        logger.warning("Dropping connection %s: %s", connection_id, error)
        self.unsubscribe_all(connection_id)
        await self._hub.drop(connection_id)

    # ── History ────────────────────────────────────────────────────

    def _record(self, channel: str, envelope: dict[str, Any]) -> None:
        self._history.append({
            "id": f"notif_{uuid.uuid4().hex[:12]}",
            "channel": channel,
            **envelope,
        })

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        """Return the most recent notifications, oldest first."""
        items = [item for item in self._history if event_type is None or item["type"] == event_type]
        return items[-max(1, int(limit)):]

    def clear_history(self, event_type: Optional[str] = None) -> int:
        before = len(self._history)
        if event_type is None:
            self._history.clear()
        else:
            kept = [item for item in self._history if item["type"] != event_type]
            self._history.clear()
            self._history.extend(kept)
        return before - len(self._history)

    def stats(self) -> dict[str, Any]:
        return {
            **self.metrics,
            "channels": {channel: len(members) for channel, members in self._subscriptions.items()},
            "historySize": len(self._history),
            "generatedAt": format_iso(utc_now()),
        }
