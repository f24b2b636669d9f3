"""Shared data types for the conversation engine."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationState(str, Enum):
    """Lifecycle of the orchestrator. Exactly one value is current at a time."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


class Mode(str, Enum):
    CONTINUOUS = "continuous"
    PUSH_TO_TALK = "push_to_talk"
    REALTIME = "realtime"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    """One persisted user or assistant utterance. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    text: str
    created_at: datetime = Field(default_factory=_now)

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(role=Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str) -> "Turn":
        return cls(role=Role.ASSISTANT, text=text)


# ── Capture events ────────────────────────────────────────────
# Emitted by a capture engine for one session, then forwarded by the
# SpeechCaptureController to the orchestrator.

@dataclass(frozen=True)
class CaptureInterim:
    text: str


@dataclass(frozen=True)
class CaptureFinal:
    text: str


@dataclass(frozen=True)
class CaptureEnded:
    """The engine closed the session on its own (silence, network, ...)."""
    reason: str = ""


@dataclass(frozen=True)
class CaptureFailed:
    """Engine-reported error. `code` follows the Web Speech error names."""
    code: str
    message: str = ""


# ── Realtime transport events ─────────────────────────────────

@dataclass(frozen=True)
class SpeechStarted:
    pass


@dataclass(frozen=True)
class SpeechStopped:
    pass


@dataclass(frozen=True)
class InputTranscript:
    text: str


@dataclass(frozen=True)
class OutputDelta:
    delta: str


@dataclass(frozen=True)
class OutputDone:
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class TransportFailure:
    message: str


CaptureEvent = CaptureInterim | CaptureFinal | CaptureEnded | CaptureFailed
TransportEvent = (
    SpeechStarted | SpeechStopped | InputTranscript | OutputDelta
    | OutputDone | TurnComplete | TransportFailure
)
