"""In-memory conversation store.

The store is the only place a conversation's `currentState` is assigned, and
it is always the output of the inference rules. Each mutation re-evaluates
the state and publishes any transition before returning.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from ccpulse.date_utils import utc_now
from ccpulse.inference.state import decide
from ccpulse.models import (
    Conversation,
    ConversationState,
    ConversationSummary,
    Message,
    StateChangeEvent,
)
from ccpulse.notifications.manager import NotificationManager
from ccpulse.settings import MonitorSettings

logger = logging.getLogger("ccpulse.store")


class ConversationStore:
    def __init__(
        self,
        notifications: Optional[NotificationManager] = None,
        settings: Optional[MonitorSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._notifications = notifications
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()
        self.metrics = {"upserts": 0, "stateChanges": 0, "refreshes": 0}

    # ── Reads ──────────────────────────────────────────────────────

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def all(self) -> list[Conversation]:
        """All conversations, most recently modified first."""
        return sorted(self._conversations.values(), key=lambda item: item.lastModified, reverse=True)

    def states(self) -> dict[str, ConversationState]:
        return {conversation_id: item.currentState for conversation_id, item in self._conversations.items()}

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    # ── Mutations ──────────────────────────────────────────────────

    async def seed(
        self,
        conversation_id: str,
        *,
        project_path: str = "",
        source_path: str = "",
        last_modified: Optional[datetime] = None,
        file_size: int = 0,
    ) -> Conversation:
        """Register a conversation that has no parsed messages yet."""
        async with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is not None:
                return existing
            now = self._clock()
            fields = {
                "id": conversation_id,
                "projectPath": project_path,
                "sourcePath": source_path,
                "messages": (),
                "lastModified": last_modified or now,
                "fileSize": 0,
                "fileSizeDelta": max(0, int(file_size)),
            }
            conversation, event = self._commit(fields, None, now)
        logger.info("Tracking new conversation %s", conversation_id)
        await self._publish(event)
        return conversation

    async def upsert(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        summary: ConversationSummary,
        *,
        project_path: str = "",
        source_path: str = "",
        last_modified: datetime,
        file_size: int = 0,
    ) -> Conversation:
        """Replace a conversation's parsed content and re-infer its state."""
        async with self._lock:
            previous = self._conversations.get(conversation_id)
            now = self._clock()
            fields = {
                "id": conversation_id,
                "projectPath": project_path or (previous.projectPath if previous else ""),
                "sourcePath": source_path or (previous.sourcePath if previous else ""),
                "messages": tuple(messages),
                "lastModified": last_modified,
                "cachedSummary": summary,
                "fileSize": max(0, int(file_size)),
                "fileSizeDelta": 0,
            }
            conversation, event = self._commit(fields, previous, now)
            self.metrics["upserts"] += 1

        await self._publish(event)
        previous_count = len(previous.messages) if previous else 0
        if (
            self._notifications is not None
            and previous is not None
            and len(conversation.messages) > previous_count
        ):
            await self._notifications.notify_new_message(
                conversation_id,
                conversation.messages[-1],
                len(conversation.messages),
            )
        return conversation

    async def record_activity(self, conversation_id: str, observed_size: int) -> Optional[Conversation]:
        """Record the on-disk size seen by a raw watch event ahead of the next ingestion."""
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                return None
            delta = max(0, int(observed_size) - current.fileSize)
            if delta == current.fileSizeDelta:
                return current
            fields = current.model_dump(exclude={"currentState", "stateRule", "updatedAt"})
            fields["messages"] = current.messages
            fields["fileSizeDelta"] = delta
            conversation, event = self._commit(fields, current, self._clock())
        await self._publish(event)
        return conversation

    async def mark_unreachable(self, conversation_id: str, reason: str) -> Optional[Conversation]:
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                return None
            if not current.reachable and current.unreachableReason == reason:
                return current
            fields = current.model_dump(exclude={"currentState", "stateRule", "updatedAt"})
            fields["messages"] = current.messages
            fields["reachable"] = False
            fields["unreachableReason"] = reason
            fields["fileSizeDelta"] = 0
            conversation, event = self._commit(fields, current, self._clock())

        logger.warning("Conversation %s is unreachable: %s", conversation_id, reason)
        await self._publish(event)
        if self._notifications is not None and current.reachable:
            await self._notifications.notify_unreachable(conversation_id, reason)
        return conversation

    async def refresh(self, now: Optional[datetime] = None) -> list[StateChangeEvent]:
        """Re-run inference for every conversation so time-driven transitions fire without new writes."""
        events: list[StateChangeEvent] = []
        async with self._lock:
            moment = now or self._clock()
            for conversation_id in list(self._conversations):
                current = self._conversations[conversation_id]
                decision = decide(
                    current.last_message,
                    current.lastModified,
                    moment,
                    current.fileSizeDelta,
                    self.settings,
                )
                if decision.state == current.currentState:
                    continue
                self._conversations[conversation_id] = current.model_copy(
                    update={"currentState": decision.state, "stateRule": decision.rule, "updatedAt": moment}
                )
                events.append(StateChangeEvent(
                    conversationId=conversation_id,
                    previousState=current.currentState,
                    newState=decision.state,
                    context=decision.context,
                    timestamp=moment,
                ))
            self.metrics["refreshes"] += 1
        for event in events:
            await self._publish(event)
        return events

    async def remove(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            removed = self._conversations.pop(conversation_id, None)
        if removed is not None:
            logger.info("Stopped tracking conversation %s", conversation_id)
        return removed

    def _commit(
        self,
        fields: dict[str, Any],
        previous: Optional[Conversation],
        now: datetime,
    ) -> tuple[Conversation, Optional[StateChangeEvent]]:
        """Store the re-inferred conversation and return it with its transition, if any.

        Runs under the store lock; the caller publishes the event once the
        lock is released so a slow subscriber never blocks other mutations.
        """
        messages = fields.get("messages") or ()
        decision = decide(
            messages[-1] if messages else None,
            fields["lastModified"],
            now,
            fields.get("fileSizeDelta", 0),
            self.settings,
        )
        conversation = Conversation(
            **fields,
            currentState=decision.state,
            stateRule=decision.rule,
            updatedAt=now,
        )
        self._conversations[conversation.id] = conversation

        if previous is not None and previous.currentState == decision.state:
            return conversation, None
        return conversation, StateChangeEvent(
            conversationId=conversation.id,
            previousState=previous.currentState if previous else None,
            newState=decision.state,
            context=decision.context,
            timestamp=now,
        )

    async def _publish(self, event: Optional[StateChangeEvent]) -> None:
        if event is None:
            return
        self.metrics["stateChanges"] += 1
        logger.info(
            "Conversation %s: %s -> %s",
            event.conversationId,
            event.previousState.value if event.previousState else "-",
            event.newState.value,
        )
        if self._notifications is not None:
            await self._notifications.notify_state_change(event)
