"""Pydantic models shared by the ingestion pipeline and the live API."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversationState(str, Enum):
    ASSISTANT_WORKING = "AssistantWorking"
    EXECUTING_TOOLS = "ExecutingTools"
    ANALYZING_RESULTS = "AnalyzingResults"
    AWAITING_USER_INPUT = "AwaitingUserInput"
    TASK_COMPLETED = "TaskCompleted"
    ENCOUNTERED_ISSUE = "EncounteredIssue"
    USER_TYPING = "UserTyping"
    RECENTLY_ACTIVE = "RecentlyActive"
    IDLE = "Idle"
    INACTIVE = "Inactive"
    OLD = "Old"


STATE_LABELS: dict[ConversationState, str] = {
    ConversationState.ASSISTANT_WORKING: "Assistant working...",
    ConversationState.EXECUTING_TOOLS: "Executing tools...",
    ConversationState.ANALYZING_RESULTS: "Analyzing results...",
    ConversationState.AWAITING_USER_INPUT: "Awaiting user input...",
    ConversationState.TASK_COMPLETED: "Task completed",
    ConversationState.ENCOUNTERED_ISSUE: "Encountered issue",
    ConversationState.USER_TYPING: "User typing...",
    ConversationState.RECENTLY_ACTIVE: "Recently active",
    ConversationState.IDLE: "Idle",
    ConversationState.INACTIVE: "Inactive",
    ConversationState.OLD: "Old",
}


# ── Message-related models ─────────────────────────────────────────

class ToolInvocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    toolName: str = ""
    hasResult: bool = False
    isError: bool = False


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: Literal["user", "assistant"]
    timestamp: Optional[datetime] = None
    textContent: Optional[str] = None
    toolInvocations: tuple[ToolInvocation, ...] = ()
    parentId: Optional[str] = None
    model: Optional[str] = None

    @property
    def has_unresolved_tools(self) -> bool:
        return any(not tool.hasResult for tool in self.toolInvocations)


# ── Conversation models ────────────────────────────────────────────

class ConversationSummary(BaseModel):
    messageCount: int = 0
    estimatedTokens: int = 0
    reportedTokens: int = 0
    toolInvocationCount: int = 0
    lastActivity: Optional[datetime] = None
    warningCount: int = 0


class Conversation(BaseModel):
    id: str
    projectPath: str = ""
    sourcePath: str = ""
    messages: tuple[Message, ...] = ()
    lastModified: datetime
    currentState: ConversationState
    stateRule: str = ""
    cachedSummary: ConversationSummary = Field(default_factory=ConversationSummary)
    fileSize: int = 0
    fileSizeDelta: int = 0
    reachable: bool = True
    unreachableReason: str = ""
    updatedAt: Optional[datetime] = None

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


class ConversationOverview(BaseModel):
    """List view of a conversation without its message bodies."""

    id: str
    projectPath: str = ""
    lastModified: datetime
    currentState: ConversationState
    stateLabel: str = ""
    messageCount: int = 0
    estimatedTokens: int = 0
    reachable: bool = True

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationOverview":
        return cls(
            id=conversation.id,
            projectPath=conversation.projectPath,
            lastModified=conversation.lastModified,
            currentState=conversation.currentState,
            stateLabel=STATE_LABELS.get(conversation.currentState, ""),
            messageCount=conversation.cachedSummary.messageCount,
            estimatedTokens=conversation.cachedSummary.estimatedTokens,
            reachable=conversation.reachable,
        )


# ── Live notification models ───────────────────────────────────────

class StateChangeEvent(BaseModel):
    conversationId: str
    previousState: Optional[ConversationState] = None
    newState: ConversationState
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class Subscription(BaseModel):
    connectionId: str
    channel: str
    createdAt: datetime
