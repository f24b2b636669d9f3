"""Tests for SpeechCaptureController session handling."""

from __future__ import annotations

import pytest

from engine.capture import SpeechCaptureController
from engine.errors import CapturePermissionDenied, CaptureUnsupported
from engine.types import CaptureEnded, CaptureFailed, CaptureFinal, CaptureInterim


class Events:
    def __init__(self):
        self.items = []

    async def __call__(self, event):
        self.items.append(event)


@pytest.fixture()
def events():
    return Events()


def controller_for(engines, events, **kwargs):
    return SpeechCaptureController(engines, events, **kwargs)


class TestStart:
    async def test_unsupported_host(self, engines, events):
        engines.available = False
        controller = controller_for(engines, events)
        with pytest.raises(CaptureUnsupported):
            await controller.start()
        assert not controller.active

    async def test_permission_denied(self, engines, events):
        engines.denied = True
        controller = controller_for(engines, events)
        with pytest.raises(CapturePermissionDenied):
            await controller.start()
        assert not controller.active
        assert str(CapturePermissionDenied()) == "Microphone access was denied"

    async def test_start_while_active_is_a_no_op(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        await controller.start()
        assert len(engines.engines) == 1
        assert controller.active


class TestEvents:
    async def test_interim_then_final(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        await engines.latest.interim("מה")
        assert controller.interim == "מה"
        await engines.latest.final("מה השעה")

        assert events.items == [CaptureInterim("מה"), CaptureFinal("מה השעה")]
        assert not controller.active
        assert controller.interim == ""

    async def test_events_from_stopped_session_are_dropped(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        old = engines.latest
        await controller.stop()
        await old.interim("late")
        await old.final("late")
        assert events.items == []

    async def test_events_from_replaced_session_are_dropped(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        old = engines.latest
        await controller.stop()
        await controller.start()
        await old.final("stale")
        await engines.latest.final("fresh")
        assert events.items == [CaptureFinal("fresh")]

    async def test_non_transient_failure_is_surfaced(self, engines, events):
        controller = controller_for(engines, events, auto_restart=True)
        await controller.start()
        await engines.latest.fail("not-allowed")
        assert events.items == [CaptureFailed("not-allowed")]
        assert len(engines.engines) == 1

    async def test_engine_end_without_auto_restart(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        await engines.latest.end("silence")
        assert events.items == [CaptureEnded("silence")]
        assert not controller.active


class TestAutoRestart:
    async def test_restarts_after_engine_end(self, engines, events):
        controller = controller_for(engines, events, auto_restart=True)
        await controller.start()
        await engines.latest.end()
        assert len(engines.engines) == 2
        assert len(engines.running) == 1
        assert events.items == []

    @pytest.mark.parametrize("code", ["no-speech", "aborted"])
    async def test_transient_errors_restart_silently(self, engines, events, code):
        controller = controller_for(engines, events, auto_restart=True)
        await controller.start()
        await engines.latest.fail(code)
        assert len(engines.running) == 1
        assert events.items == []

    async def test_repeated_end_from_one_session_restarts_once(self, engines, events):
        controller = controller_for(engines, events, auto_restart=True)
        await controller.start()
        first = engines.latest
        await first.end()
        await first.end()
        await first.fail("no-speech")
        assert len(engines.engines) == 2
        assert len(engines.running) == 1

    async def test_predicate_blocks_restart(self, engines, events):
        controller = controller_for(engines, events, auto_restart=True, should_restart=lambda: False)
        await controller.start()
        await engines.latest.fail("no-speech")
        assert events.items == [CaptureEnded("no-speech")]
        assert len(engines.engines) == 1

    async def test_restart_failure_is_reported(self, engines, events):
        controller = controller_for(engines, events, auto_restart=True)
        await controller.start()
        engines.denied = True
        await engines.latest.end()
        assert [e.code for e in events.items] == ["not-allowed"]
        assert not controller.active


class TestStop:
    async def test_harvest_returns_interim(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        await engines.latest.interim("partial words")
        assert await controller.stop(harvest=True) == "partial words"
        assert engines.engines[0].stop_calls == 1

    async def test_plain_stop_discards_interim(self, engines, events):
        controller = controller_for(engines, events)
        await controller.start()
        await engines.latest.interim("discard me")
        assert await controller.stop() == ""

    async def test_stop_without_session(self, engines, events):
        controller = controller_for(engines, events)
        assert await controller.stop(harvest=True) == ""
