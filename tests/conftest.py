"""Test doubles for the orchestrator's collaborators."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import pytest

from engine.capture import CaptureEngine
from engine.conversation import HistoryStore, MemoryKeyValueStore
from engine.errors import CapturePermissionDenied
from engine.playback import AudioPlaybackController, AudioSink
from engine.realtime import RealtimeTransport
from engine.types import CaptureEnded, CaptureFailed, CaptureFinal, CaptureInterim, Mode
from voice_persona.orchestrator import ConversationOrchestrator


class FakeCaptureEngine(CaptureEngine):
    def __init__(self, factory: "EngineFactory"):
        self.factory = factory
        self.emit = None
        self.running = False
        self.stop_calls = 0

    @property
    def available(self) -> bool:
        return self.factory.available

    async def start(self, emit) -> None:
        if self.factory.denied:
            raise CapturePermissionDenied()
        self.emit = emit
        self.running = True

    async def stop(self) -> None:
        self.running = False
        self.stop_calls += 1

    async def interim(self, text: str) -> None:
        await self.emit(CaptureInterim(text=text))

    async def final(self, text: str) -> None:
        self.running = False
        await self.emit(CaptureFinal(text=text))

    async def end(self, reason: str = "") -> None:
        self.running = False
        await self.emit(CaptureEnded(reason=reason))

    async def fail(self, code: str) -> None:
        self.running = False
        await self.emit(CaptureFailed(code=code))


class EngineFactory:
    def __init__(self):
        self.engines: list[FakeCaptureEngine] = []
        self.available = True
        self.denied = False

    def __call__(self) -> FakeCaptureEngine:
        engine = FakeCaptureEngine(self)
        self.engines.append(engine)
        return engine

    @property
    def running(self) -> list[FakeCaptureEngine]:
        return [e for e in self.engines if e.running]

    @property
    def latest(self) -> FakeCaptureEngine:
        return self.engines[-1]


class FakeSink(AudioSink):
    def __init__(self):
        self.played: list[bytes] = []
        self.stop_calls = 0
        self.fail = False
        self.block = False
        self.on_play: Optional[Callable[[], None]] = None

    async def play(self, audio: bytes) -> None:
        self.played.append(audio)
        if self.on_play:
            self.on_play()
        if self.fail:
            raise ValueError("codec rejected the clip")
        if self.block:
            await asyncio.Event().wait()

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeServices:
    """Completion and synthesis endpoints with injectable failures."""

    def __init__(self):
        self.reply = "אין לי גישה לשעון, תבדוק בטלפון"
        self.audio = b"ID3-fake-mp3"
        self.completion_error: Optional[Exception] = None
        self.synthesis_error: Optional[Exception] = None
        self.completion_gate: Optional[asyncio.Event] = None
        self.synthesis_gate: Optional[asyncio.Event] = None
        self.completions: list[tuple[str, list[dict]]] = []
        self.syntheses: list[str] = []

    async def complete(self, message: str, context: list[dict]) -> str:
        self.completions.append((message, context))
        if self.completion_gate is not None:
            await self.completion_gate.wait()
        if self.completion_error is not None:
            raise self.completion_error
        return self.reply

    async def synthesize(self, text: str) -> bytes:
        self.syntheses.append(text)
        if self.synthesis_gate is not None:
            await self.synthesis_gate.wait()
        if self.synthesis_error is not None:
            raise self.synthesis_error
        return self.audio


class FakeTransport(RealtimeTransport):
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.emit = None
        self.closed = False
        self.interrupts = 0

    async def connect(self, emit) -> None:
        if self.error is not None:
            raise self.error
        self.emit = emit

    async def interrupt(self) -> None:
        self.interrupts += 1

    async def close(self) -> None:
        self.closed = True

    async def send(self, event) -> None:
        await self.emit(event)


class Recorder:
    """Collects observer events; can stall once on a given state, like a slow socket."""

    def __init__(self):
        self.events: list[dict] = []
        self.held = False
        self._hold_state: Optional[str] = None
        self._gate: Optional[asyncio.Event] = None

    def hold(self, state: str) -> None:
        self._hold_state = state
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def __call__(self, event: dict) -> None:
        self.events.append(event)
        if self._hold_state is not None and event.get("state") == self._hold_state:
            self._hold_state = None
            self.held = True
            await self._gate.wait()

    def of(self, kind: str) -> list[dict]:
        return [e for e in self.events if e["type"] == kind]

    @property
    def states(self) -> list[str]:
        return [e["state"] for e in self.of("state")]


@pytest.fixture()
def history():
    return HistoryStore(MemoryKeyValueStore())


@pytest.fixture()
def engines():
    return EngineFactory()


@pytest.fixture()
def sink():
    return FakeSink()


@pytest.fixture()
def services():
    return FakeServices()


@pytest.fixture()
def recorder():
    return Recorder()


@pytest.fixture()
def transports():
    return []


@pytest.fixture()
def build(history, engines, sink, services, recorder, transports):
    """Factory for orchestrators wired to the fakes above."""

    def _build(mode: Mode = Mode.CONTINUOUS, *, transport_error=None, capture=True, **kwargs):
        def transport_factory():
            transport = FakeTransport(transport_error)
            transports.append(transport)
            return transport

        return ConversationOrchestrator(
            mode=mode,
            history=history,
            playback=AudioPlaybackController(sink),
            complete=services.complete,
            synthesize=services.synthesize,
            capture_engine=engines if capture else None,
            transport_factory=transport_factory,
            on_event=recorder,
            **kwargs,
        )

    return _build
