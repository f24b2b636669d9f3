"""Speech capture — capability interface plus the per-session controller.

The controller holds a single current-session reference. Every engine
callback carries the session it belongs to; anything arriving from a
session that is no longer current is dropped, so a stopped or replaced
session can never resurrect state.
"""

import functools
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .errors import CaptureError, CapturePermissionDenied, CaptureUnsupported
from .types import CaptureEnded, CaptureEvent, CaptureFailed, CaptureFinal, CaptureInterim

log = logging.getLogger("capture")

# Engine error codes that end a session without being the user's problem
TRANSIENT_ERRORS = frozenset({"no-speech", "aborted"})

EventSink = Callable[[CaptureEvent], Awaitable[None]]


class CaptureEngine(ABC):
    """A speech-to-text capability. One instance serves exactly one session.

    After start() the engine reports through `emit` until it emits a
    CaptureFinal, CaptureEnded or CaptureFailed (after which it must have
    released its own resources), or until stop() is called.
    """

    @property
    def available(self) -> bool:
        """False when the host has no capture capability at all."""
        return True

    @abstractmethod
    async def start(self, emit: EventSink) -> None:
        """Begin capturing. Raise CapturePermissionDenied if the mic is refused."""

    @abstractmethod
    async def stop(self) -> None:
        """End capture immediately and release resources."""


class CaptureSession:
    _ids = itertools.count(1)

    def __init__(self, engine: CaptureEngine):
        self.id = next(self._ids)
        self.engine = engine
        self.interim = ""


class SpeechCaptureController:
    """Runs capture sessions and applies the auto-restart policy.

    Args:
        engine_factory: Creates a fresh engine for every session.
        on_event: Async callback receiving interim/final/ended/failed events.
        auto_restart: Restart sessions the engine ends on its own (continuous mode).
        should_restart: Consulted before each auto-restart; the orchestrator
            answers True only while it is listening and not busy.
    """

    def __init__(
        self,
        engine_factory: Callable[[], CaptureEngine],
        on_event: EventSink,
        *,
        auto_restart: bool = False,
        should_restart: Callable[[], bool] = lambda: True,
    ):
        self._engine_factory = engine_factory
        self._on_event = on_event
        self.auto_restart = auto_restart
        self._should_restart = should_restart
        self._session: Optional[CaptureSession] = None

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def interim(self) -> str:
        return self._session.interim if self._session else ""

    async def start(self) -> None:
        """Open a new session. A no-op while one is already active."""
        if self._session is not None:
            log.debug("Capture session %d already active", self._session.id)
            return

        engine = self._engine_factory()
        if not engine.available:
            raise CaptureUnsupported()

        session = CaptureSession(engine)
        self._session = session
        try:
            await engine.start(functools.partial(self._on_engine_event, session))
        except BaseException:
            if self._session is session:
                self._session = None
            raise
        log.info("Capture session %d started", session.id)

    async def stop(self, harvest: bool = False) -> str:
        """End the current session.

        Interim text is discarded unless `harvest` is set, in which case it
        is returned (push-to-talk sends it as the utterance).
        """
        session = self._session
        if session is None:
            return ""
        self._session = None
        text = session.interim if harvest else ""
        session.interim = ""
        try:
            await session.engine.stop()
        except Exception as e:
            log.warning("Capture engine did not stop cleanly: %s", e)
        log.info("Capture session %d stopped", session.id)
        return text

    async def _on_engine_event(self, session: CaptureSession, event: CaptureEvent) -> None:
        if session is not self._session:
            log.debug("Dropping %s from stale capture session %d", type(event).__name__, session.id)
            return

        if isinstance(event, CaptureInterim):
            session.interim = event.text
            await self._on_event(event)
            return

        # Every other event ends the session; the engine has already
        # released itself, so it is not stopped again from its own callback.
        self._session = None
        session.interim = ""

        if isinstance(event, CaptureFinal):
            log.info("Capture session %d final: %r", session.id, event.text[:80])
            await self._on_event(event)
            return

        if isinstance(event, CaptureFailed) and event.code not in TRANSIENT_ERRORS:
            log.warning("Capture session %d failed: %s %s", session.id, event.code, event.message)
            await self._on_event(event)
            return

        reason = event.code if isinstance(event, CaptureFailed) else event.reason
        if self.auto_restart and self._should_restart():
            log.info("Capture session %d ended (%s), restarting", session.id, reason or "engine")
            try:
                await self.start()
            except CaptureError as e:
                code = "not-allowed" if isinstance(e, CapturePermissionDenied) else "audio-capture"
                await self._on_event(CaptureFailed(code=code, message=str(e)))
            return

        log.info("Capture session %d ended (%s)", session.id, reason or "engine")
        await self._on_event(CaptureEnded(reason=reason))
