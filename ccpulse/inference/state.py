"""Heuristic activity-state inference for conversations.

`RULES` is an ordered tuple of pure predicates; the first one that returns a
state wins, so ambiguous inputs resolve to the earliest matching rule. The
keyword checks are intentionally cheap string heuristics and every threshold
and keyword list comes from `MonitorSettings`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Optional, Sequence

from ccpulse.date_utils import ensure_utc
from ccpulse.models import Conversation, ConversationState, Message
from ccpulse.settings import MonitorSettings

_DEFAULT_SETTINGS = MonitorSettings()


@dataclass(frozen=True)
class InferenceInput:
    last_message: Optional[Message]
    last_modified: datetime
    now: datetime
    file_size_delta: int
    settings: MonitorSettings

    @property
    def minutes_since_modified(self) -> float:
        return max(0.0, (self.now - self.last_modified).total_seconds() / 60.0)

    @property
    def seconds_since_last_message(self) -> float:
        reference = self.last_modified
        if self.last_message is not None and self.last_message.timestamp is not None:
            reference = ensure_utc(self.last_message.timestamp)
        return max(0.0, (self.now - reference).total_seconds())

    @property
    def text(self) -> str:
        if self.last_message is None:
            return ""
        return self.last_message.textContent or ""


@dataclass(frozen=True)
class StateDecision:
    state: ConversationState
    rule: str
    context: dict[str, Any] = field(default_factory=dict)


Rule = Callable[[InferenceInput], Optional[ConversationState]]


@lru_cache(maxsize=64)
def _keyword_pattern(keywords: tuple[str, ...]) -> Optional[re.Pattern[str]]:
    cleaned = [keyword.strip() for keyword in keywords if keyword and keyword.strip()]
    if not cleaned:
        return None
    alternatives = "|".join(re.escape(keyword) for keyword in sorted(cleaned, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


def matches_keywords(text: str, keywords: Sequence[str]) -> bool:
    pattern = _keyword_pattern(tuple(keywords))
    return bool(text and pattern is not None and pattern.search(text))


def time_bucket(minutes_since_modified: float, settings: MonitorSettings) -> ConversationState:
    if minutes_since_modified < settings.recently_active_minutes:
        return ConversationState.RECENTLY_ACTIVE
    if minutes_since_modified < settings.idle_minutes:
        return ConversationState.IDLE
    if minutes_since_modified < settings.inactive_minutes:
        return ConversationState.INACTIVE
    return ConversationState.OLD


def _is_assistant(inp: InferenceInput) -> bool:
    return inp.last_message is not None and inp.last_message.role == "assistant"


def _rule_stale(inp: InferenceInput) -> Optional[ConversationState]:
    if inp.last_message is None or inp.minutes_since_modified >= inp.settings.active_window_minutes:
        return time_bucket(inp.minutes_since_modified, inp.settings)
    return None


def _rule_user_message(inp: InferenceInput) -> Optional[ConversationState]:
    if inp.last_message is not None and inp.last_message.role == "user":
        return ConversationState.ASSISTANT_WORKING
    return None


def _rule_tool_activity(inp: InferenceInput) -> Optional[ConversationState]:
    if not _is_assistant(inp) or not inp.last_message.toolInvocations:
        return None
    if inp.last_message.has_unresolved_tools:
        return ConversationState.EXECUTING_TOOLS
    inspect = {name.lower() for name in inp.settings.inspect_tools}
    if any(tool.toolName.lower() in inspect for tool in inp.last_message.toolInvocations):
        return ConversationState.ANALYZING_RESULTS
    return ConversationState.ASSISTANT_WORKING


def _rule_user_typing(inp: InferenceInput) -> Optional[ConversationState]:
    if not _is_assistant(inp):
        return None
    if inp.file_size_delta > 0:
        return None
    if inp.seconds_since_last_message > inp.settings.typing_threshold_seconds:
        return ConversationState.USER_TYPING
    return None


def _rule_completion(inp: InferenceInput) -> Optional[ConversationState]:
    if _is_assistant(inp) and matches_keywords(inp.text, inp.settings.completion_keywords):
        return ConversationState.TASK_COMPLETED
    return None


def _rule_error(inp: InferenceInput) -> Optional[ConversationState]:
    if _is_assistant(inp) and matches_keywords(inp.text, inp.settings.error_keywords):
        return ConversationState.ENCOUNTERED_ISSUE
    return None


def _rule_solicitation(inp: InferenceInput) -> Optional[ConversationState]:
    if not _is_assistant(inp):
        return None
    text = inp.text.rstrip()
    if text.endswith("?") or matches_keywords(text, inp.settings.solicitation_phrases):
        return ConversationState.AWAITING_USER_INPUT
    return None


def _rule_time_bucket(inp: InferenceInput) -> Optional[ConversationState]:
    return time_bucket(inp.minutes_since_modified, inp.settings)


RULES: tuple[tuple[str, Rule], ...] = (
    ("stale", _rule_stale),
    ("user_message", _rule_user_message),
    ("tool_activity", _rule_tool_activity),
    ("user_typing", _rule_user_typing),
    ("completion_keywords", _rule_completion),
    ("error_keywords", _rule_error),
    ("solicitation", _rule_solicitation),
    ("time_bucket", _rule_time_bucket),
)


def decide(
    last_message: Optional[Message],
    last_modified: datetime,
    now: datetime,
    recent_file_size_delta: int = 0,
    settings: Optional[MonitorSettings] = None,
) -> StateDecision:
    """Apply `RULES` in order to the latest message and timing signals."""
    inp = InferenceInput(
        last_message=last_message,
        last_modified=ensure_utc(last_modified),
        now=ensure_utc(now),
        file_size_delta=max(0, int(recent_file_size_delta or 0)),
        settings=settings or _DEFAULT_SETTINGS,
    )
    context: dict[str, Any] = {
        "lastMessageRole": last_message.role if last_message else None,
        "lastMessageId": last_message.id if last_message else None,
        "toolNames": [tool.toolName for tool in last_message.toolInvocations] if last_message else [],
        "minutesSinceModified": round(inp.minutes_since_modified, 2),
        "fileSizeDelta": inp.file_size_delta,
    }
    for name, rule in RULES:
        state = rule(inp)
        if state is not None:
            return StateDecision(state=state, rule=name, context={"rule": name, **context})
    state = time_bucket(inp.minutes_since_modified, inp.settings)
    return StateDecision(state=state, rule="time_bucket", context={"rule": "time_bucket", **context})


def evaluate(
    conversation: Conversation,
    now: datetime,
    recent_file_size_delta: Optional[int] = None,
    settings: Optional[MonitorSettings] = None,
) -> StateDecision:
    delta = conversation.fileSizeDelta if recent_file_size_delta is None else recent_file_size_delta
    return decide(conversation.last_message, conversation.lastModified, now, delta, settings)


def infer(
    conversation: Conversation,
    now: datetime,
    recent_file_size_delta: Optional[int] = None,
    settings: Optional[MonitorSettings] = None,
) -> ConversationState:
    """Return the activity state for `conversation` at time `now`."""
    return evaluate(conversation, now, recent_file_size_delta, settings).state
