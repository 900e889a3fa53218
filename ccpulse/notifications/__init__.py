"""Live notification delivery: channel subscriptions and WebSocket connections."""

from ccpulse.notifications.hub import ConnectionHub, build_envelope
from ccpulse.notifications.manager import (
    CONVERSATION_UPDATES_CHANNEL,
    NotificationManager,
    conversation_channel,
)

__all__ = [
    "CONVERSATION_UPDATES_CHANNEL",
    "ConnectionHub",
    "NotificationManager",
    "build_envelope",
    "conversation_channel",
]
