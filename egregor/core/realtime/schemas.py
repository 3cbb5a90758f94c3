"""Pydantic schemas for event-room run state, presence, chat and change events."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

RUN_STATE_VERSION = 1

# Backend table names
EVENTS = "events"
SCRIPTS = "scripts"
RUN_STATE = "event_run_state"
PRESENCE = "event_presence"
MESSAGES = "event_messages"


class RunMode(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ENDED = "ended"


class RunState(BaseModel):
    """Shared playback position for one event; stored as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: int = RUN_STATE_VERSION
    mode: RunMode = RunMode.IDLE
    section_index: int = Field(0, alias="sectionIndex", ge=0)
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    paused_at: Optional[datetime] = Field(None, alias="pausedAt")
    elapsed_before_pause_sec: int = Field(0, alias="elapsedBeforePauseSec", ge=0)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PresenceRow(BaseModel):
    event_id: str
    user_id: str
    joined_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.event_id, self.user_id)


class ChatMessage(BaseModel):
    id: str
    event_id: str
    user_id: str
    body: str
    created_at: datetime
    client_id: Optional[str] = None
    # Local-only: optimistic entry not yet confirmed by the backend
    pending: bool = Field(False, exclude=True)


class ScriptSection(BaseModel):
    name: str
    minutes: float
    text: str = ""


class Script(BaseModel):
    title: str
    duration_minutes: float
    tone: str = "calm"
    sections: List[ScriptSection]
    speaker_notes: Optional[str] = None


class EventInfo(BaseModel):
    id: str
    title: str = ""
    host_user_id: Optional[str] = None
    created_by: Optional[str] = None
    script_id: Optional[str] = None


class ChangeEvent(BaseModel):
    type: str = Field(..., pattern=r"^(insert|update|delete)$")
    table: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Optional[Dict[str, Any]]:
        """The row the event is about: ``after`` for writes, ``before`` for deletes."""
        return self.after if self.after is not None else self.before


class TransitionRequest(BaseModel):
    mode: RunMode
    section_index: int = Field(0, ge=0)
    elapsed_before_pause_sec: int = Field(0, ge=0)
    reset_timer: bool = False


class SendMessageRequest(BaseModel):
    body: str
    client_id: Optional[str] = None
