"""Realtime transport interface and inbound event translation.

The hosted realtime service sends JSON events over a data channel. Only
the kinds the orchestrator cares about are translated; everything else,
including payloads that fail to parse, is dropped.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .types import (
    InputTranscript,
    OutputDelta,
    OutputDone,
    SpeechStarted,
    SpeechStopped,
    TransportEvent,
    TransportFailure,
    TurnComplete,
)

log = logging.getLogger("realtime")

TransportSink = Callable[[TransportEvent], Awaitable[None]]

# Preview and GA event names both appear in the wild
_OUTPUT_DELTA = {"response.audio_transcript.delta", "response.output_audio_transcript.delta"}
_OUTPUT_DONE = {"response.audio_transcript.done", "response.output_audio_transcript.done"}


class RealtimeTransport(ABC):
    """Full-duplex session with a hosted realtime voice service."""

    @abstractmethod
    async def connect(self, emit: TransportSink) -> None:
        """Obtain a credential and establish the session.

        Raises TransportError if either step fails. Afterwards inbound
        events are delivered through `emit`.
        """

    @abstractmethod
    async def interrupt(self) -> None:
        """Cancel the in-progress response and flush queued remote audio."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the session down. Safe to call more than once."""


def parse_event(raw: str | bytes) -> Optional[TransportEvent]:
    """Translate one raw server event, or return None to discard it."""
    try:
        event = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        log.debug("Discarding unparseable realtime event")
        return None
    if not isinstance(event, dict):
        return None

    kind = event.get("type")
    if kind == "input_audio_buffer.speech_started":
        return SpeechStarted()
    if kind == "input_audio_buffer.speech_stopped":
        return SpeechStopped()
    if kind == "conversation.item.input_audio_transcription.completed":
        return InputTranscript(text=_text(event.get("transcript")))
    if kind in _OUTPUT_DELTA:
        return OutputDelta(delta=_text(event.get("delta")))
    if kind in _OUTPUT_DONE:
        return OutputDone(text=_text(event.get("transcript")))
    if kind == "response.done":
        return TurnComplete()
    if kind == "error":
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return TransportFailure(message=_text(message) or "Realtime service error")

    log.debug("Ignoring realtime event: %s", kind)
    return None


def _text(value) -> str:
    return value if isinstance(value, str) else ""
