"""Tests for translating realtime service events."""

from __future__ import annotations

import json

import pytest

from engine.realtime import parse_event
from engine.types import (
    InputTranscript,
    OutputDelta,
    OutputDone,
    SpeechStarted,
    SpeechStopped,
    TransportFailure,
    TurnComplete,
)


@pytest.mark.parametrize("payload, expected", [
    ({"type": "input_audio_buffer.speech_started"}, SpeechStarted()),
    ({"type": "input_audio_buffer.speech_stopped"}, SpeechStopped()),
    (
        {"type": "conversation.item.input_audio_transcription.completed", "transcript": "מה השעה"},
        InputTranscript("מה השעה"),
    ),
    ({"type": "response.audio_transcript.delta", "delta": "אין "}, OutputDelta("אין ")),
    ({"type": "response.output_audio_transcript.delta", "delta": "לי"}, OutputDelta("לי")),
    ({"type": "response.audio_transcript.done", "transcript": "אין לי"}, OutputDone("אין לי")),
    ({"type": "response.output_audio_transcript.done", "transcript": "שלום"}, OutputDone("שלום")),
    ({"type": "response.done", "response": {}}, TurnComplete()),
    ({"type": "error", "error": {"message": "Invalid session"}}, TransportFailure("Invalid session")),
])
def test_known_events(payload, expected):
    assert parse_event(json.dumps(payload)) == expected


def test_bytes_payload():
    raw = json.dumps({"type": "response.done"}).encode()
    assert parse_event(raw) == TurnComplete()


def test_error_without_message_gets_a_default():
    assert parse_event('{"type": "error"}') == TransportFailure("Realtime service error")


def test_missing_transcript_is_empty_text():
    event = parse_event('{"type": "response.audio_transcript.done"}')
    assert event == OutputDone("")


@pytest.mark.parametrize("raw", [
    "{not json",
    "[1, 2, 3]",
    '"just a string"',
    '{"type": "session.created"}',
    '{"no_type": true}',
    b"\xff\xfe",
])
def test_unusable_events_are_dropped(raw):
    assert parse_event(raw) is None
