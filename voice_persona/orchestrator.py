"""Conversation orchestrator — the only writer of conversation state.

Core flow (continuous / push-to-talk):
  1. Capture emits a final transcript: USER turn appended, capture stopped
  2. Completion service called with the trimmed history
  3. ASSISTANT turn appended, reply synthesized and played
  4. Continuous mode re-arms capture, push-to-talk returns to idle

Realtime mode hands capture, completion and synthesis to the transport
and only mirrors its events into the same states and history.

Everything runs on one event loop. `_busy` is a cooperative flag, not a
lock; it is sufficient only because nothing here runs in parallel. Each
arm/disarm cycle bumps `_generation`, and work that started in an older
generation may not touch state when it finally completes.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional

from engine.capture import CaptureEngine, SpeechCaptureController
from engine.conversation import CONTEXT_LIMIT, HistoryStore, context_window
from engine.errors import CaptureError, CapturePermissionDenied, CaptureUnsupported
from engine.playback import AudioPlaybackController
from engine.realtime import RealtimeTransport
from engine.types import (
    CaptureEnded,
    CaptureFailed,
    CaptureFinal,
    CaptureInterim,
    ConversationState,
    InputTranscript,
    Mode,
    OutputDelta,
    OutputDone,
    SpeechStarted,
    SpeechStopped,
    Turn,
    TurnComplete,
    TransportFailure,
)

log = logging.getLogger("orchestrator")

Observer = Callable[[dict], Awaitable[None]]
CompleteFn = Callable[[str, list[dict]], Awaitable[str]]
SynthesizeFn = Callable[[str], Awaitable[bytes]]

IDLE = ConversationState.IDLE
LISTENING = ConversationState.LISTENING
PROCESSING = ConversationState.PROCESSING
SPEAKING = ConversationState.SPEAKING
ERROR = ConversationState.ERROR

_PERMISSION_CODES = {"not-allowed", "service-not-allowed"}


class ConversationOrchestrator:
    """Owns the conversation state machine for one conversation.

    Args:
        mode: continuous, push-to-talk or realtime.
        history: Persisted turn log.
        playback: Plays synthesized replies.
        complete: async (message, [{role, text}, ...]) -> reply text.
        synthesize: async (text) -> encoded audio bytes.
        capture_engine: Factory for a fresh capture engine per session.
            None means the host has no capture capability.
        transport_factory: Factory for a fresh realtime transport per session.
        on_event: async observer receiving UI events as dicts.
    """

    def __init__(
        self,
        *,
        mode: Mode,
        history: HistoryStore,
        playback: AudioPlaybackController,
        complete: CompleteFn,
        synthesize: SynthesizeFn,
        capture_engine: Optional[Callable[[], CaptureEngine]] = None,
        transport_factory: Optional[Callable[[], RealtimeTransport]] = None,
        on_event: Optional[Observer] = None,
        context_limit: int = CONTEXT_LIMIT,
        completion_timeout: float = 30.0,
        synthesis_timeout: float = 30.0,
    ) -> None:
        self.mode = mode
        self._history = history
        self._playback = playback
        self._complete = complete
        self._synthesize = synthesize
        self._transport_factory = transport_factory
        self._on_event = on_event
        self._context_limit = context_limit
        self._completion_timeout = completion_timeout
        self._synthesis_timeout = synthesis_timeout

        self._capture: Optional[SpeechCaptureController] = None
        if capture_engine is not None:
            self._capture = SpeechCaptureController(
                capture_engine,
                self.handle,
                auto_restart=mode is Mode.CONTINUOUS,
                should_restart=self._should_restart,
            )

        self._state = IDLE
        self._busy = False
        self._armed = False
        self._generation = 0
        self._turn_task: Optional[asyncio.Task] = None
        self._transport: Optional[RealtimeTransport] = None
        self._assistant_partial = ""
        self._user_speaking = False

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def user_speaking(self) -> bool:
        return self._user_speaking

    @property
    def assistant_partial(self) -> str:
        return self._assistant_partial

    def turns(self) -> list[Turn]:
        return self._history.load()

    # ── User actions ──────────────────────────────────────────

    async def arm(self) -> None:
        """Start listening (or open the realtime session)."""
        if self._state not in (IDLE, ERROR):
            log.debug("Ignoring arm while %s", self._state.value)
            return
        self._armed = True
        if self.mode is Mode.REALTIME:
            await self._connect_transport()
            return
        await self._listen()

    async def disarm(self) -> None:
        """Return to idle, cancelling capture, playback and any in-flight turn.

        State flips before the first suspension point so nothing that
        arrives while the rest is torn down can act on the old state.
        """
        self._armed = False
        self._generation += 1
        self._busy = False
        self._assistant_partial = ""
        self._user_speaking = False
        turn_task, self._turn_task = self._turn_task, None
        transport, self._transport = self._transport, None
        previous = self._state
        self._state = IDLE

        if self._capture is not None:
            await self._capture.stop()
        await self._playback.cancel()
        if turn_task is not None and not turn_task.done():
            turn_task.cancel()
        if transport is not None:
            await transport.close()

        if previous is not IDLE:
            log.info("State %s -> idle (disarmed)", previous.value)
            await self._emit({"type": "state", "state": IDLE.value})

    async def stop_talking(self) -> bool:
        """Push-to-talk release: send whatever was heard as the utterance."""
        if self._state is not LISTENING or self._capture is None:
            return False
        text = await self._capture.stop(harvest=True)
        if text.strip() and await self.submit(text):
            return True
        self._armed = False
        await self._set_state(IDLE)
        return False

    async def submit(self, text: str) -> bool:
        """Start a turn for a final user utterance.

        Returns False when the utterance is empty or another turn is still
        in flight; such utterances are dropped, never interleaved.
        """
        text = text.strip()
        if not text:
            return False
        if self._busy:
            log.warning("Busy, ignoring utterance %r", text[:60])
            return False

        self._busy = True
        generation = self._generation
        previous, self._state = self._state, PROCESSING
        history = self._append(Turn.user(text))
        log.info("State %s -> processing", previous.value)
        await self._emit({"type": "state", "state": PROCESSING.value})
        await self._emit_turn(history[-1])
        if self._is_current(generation):
            self._turn_task = asyncio.ensure_future(self._run_turn(text, history, generation))
        return True

    async def wait_for_turn(self) -> None:
        """Block until the in-flight turn, if any, has fully settled."""
        task = self._turn_task
        if task is not None:
            await asyncio.wait({task})

    async def clear_history(self) -> None:
        self._history.clear()
        await self._emit({"type": "history_cleared"})

    async def close(self) -> None:
        await self.disarm()

    # ── Event dispatch ────────────────────────────────────────

    async def handle(self, event) -> None:
        """Single entry point for capture and transport events."""
        if isinstance(event, CaptureInterim):
            if self._state is LISTENING:
                await self._emit({"type": "interim", "text": event.text})
        elif isinstance(event, CaptureFinal):
            if self._state is LISTENING:
                await self.submit(event.text)
        elif isinstance(event, CaptureEnded):
            # Reaches here only when no restart happened (push-to-talk)
            if self._state is LISTENING and not self._busy:
                self._armed = False
                await self._set_state(IDLE)
        elif isinstance(event, CaptureFailed):
            if self._state is LISTENING:
                self._armed = False
                await self._fail(_capture_failure_message(event))
        else:
            await self._handle_transport_event(event)

    async def _handle_transport_event(self, event) -> None:
        if isinstance(event, SpeechStarted):
            self._user_speaking = True
            await self._emit({"type": "user_speaking", "speaking": True})
            await self._emit({"type": "interim", "text": ""})
            if self._state is SPEAKING:
                await self._barge_in()
            elif self._state is PROCESSING:
                await self._set_state(LISTENING)
        elif isinstance(event, SpeechStopped):
            self._user_speaking = False
            await self._emit({"type": "user_speaking", "speaking": False})
            # Server VAD commits the utterance and starts a response
            if self._state is LISTENING:
                await self._set_state(PROCESSING)
        elif isinstance(event, InputTranscript):
            if event.text.strip():
                await self._record(Turn.user(event.text.strip()))
        elif isinstance(event, OutputDelta):
            self._assistant_partial += event.delta
            if self._state in (LISTENING, PROCESSING):
                await self._set_state(SPEAKING)
            await self._emit({"type": "assistant_partial", "text": self._assistant_partial})
        elif isinstance(event, OutputDone):
            text = (event.text or self._assistant_partial).strip()
            self._assistant_partial = ""
            if text:
                await self._record(Turn.assistant(text))
            await self._emit({"type": "assistant_partial", "text": ""})
        elif isinstance(event, TurnComplete):
            self._assistant_partial = ""
            if self._state in (SPEAKING, PROCESSING, LISTENING):
                await self._set_state(LISTENING)
        elif isinstance(event, TransportFailure):
            log.error("Realtime session error: %s", event.message)
            await self._report_error(event.message)
            transport, self._transport = self._transport, None
            self._armed = False
            self._generation += 1
            if transport is not None:
                await transport.close()
            await self._set_state(IDLE)
        else:
            log.debug("Ignoring unknown event %r", event)

    # ── Turn handling ─────────────────────────────────────────

    async def _run_turn(self, text: str, history: list[Turn], generation: int) -> None:
        try:
            await self._respond(text, history, generation)
        except asyncio.CancelledError:
            log.info("Turn cancelled")
            raise
        except Exception as e:
            log.exception("Turn failed unexpectedly")
            if self._is_current(generation):
                await self._report_error(f"Unexpected error: {type(e).__name__}")
        finally:
            if self._is_current(generation):
                self._busy = False
                self._turn_task = None
        if self._is_current(generation):
            await self._resume()

    async def _respond(self, text: str, history: list[Turn], generation: int) -> None:
        if self._capture is not None:
            await self._capture.stop()

        # The new user turn is last in `history`; it goes out as `text`
        context = context_window(history[:-1], self._context_limit)
        try:
            reply = await asyncio.wait_for(
                self._complete(text, context), self._completion_timeout
            )
        except asyncio.TimeoutError:
            log.error("Completion timed out after %.1fs", self._completion_timeout)
            await self._report_error("The assistant took too long to answer")
            return
        except Exception as e:
            log.error("Completion failed: %s", e)
            await self._report_error("Couldn't get an answer, please try again")
            return

        if not self._is_current(generation):
            return
        reply = (reply or "").strip()
        if not reply:
            await self._report_error("The assistant returned an empty answer")
            return

        await self._record(Turn.assistant(reply))
        await self._set_state(SPEAKING)

        try:
            audio = await asyncio.wait_for(self._synthesize(reply), self._synthesis_timeout)
        except asyncio.TimeoutError:
            log.error("Synthesis timed out after %.1fs", self._synthesis_timeout)
            await self._report_error("Speech took too long, showing text only")
            return
        except Exception as e:
            log.error("Synthesis failed: %s", e)
            await self._report_error("Couldn't speak the answer, showing text only")
            return

        if not self._is_current(generation):
            return
        outcome = await self._playback.play(audio)
        log.info("Playback settled: %s", outcome.value)

    async def _resume(self) -> None:
        """After a turn: re-arm capture in continuous mode, else go idle."""
        if self.mode is Mode.CONTINUOUS and self._armed:
            await self._listen()
        else:
            await self._set_state(IDLE)

    async def _listen(self) -> None:
        generation = self._generation
        await self._set_state(LISTENING)
        # The observer may have yielded to a disarm
        if not self._is_current(generation) or not self._armed:
            log.debug("Disarmed while entering listening, capture not started")
            return
        await self._start_capture()

    def _should_restart(self) -> bool:
        return self._armed and self._state is LISTENING and not self._busy

    async def _start_capture(self) -> None:
        try:
            if self._capture is None:
                raise CaptureUnsupported()
            await self._capture.start()
        except CaptureError as e:
            log.warning("Capture unavailable: %s", e)
            self._armed = False
            await self._fail(str(e))

    # ── Realtime ──────────────────────────────────────────────

    async def _connect_transport(self) -> None:
        if self._transport is not None:
            log.debug("Realtime session already open")
            return
        if self._transport_factory is None:
            self._armed = False
            await self._fail("Realtime conversation is not configured")
            return

        generation = self._generation
        transport = self._transport_factory()
        self._transport = transport
        try:
            await transport.connect(functools.partial(self._on_transport_event, transport))
        except Exception as e:
            log.error("Realtime connect failed: %s", e)
            await transport.close()
            if self._transport is transport:
                self._transport = None
            if self._is_current(generation):
                self._armed = False
                await self._fail(f"Couldn't connect: {e}")
            return

        if not self._is_current(generation) or self._transport is not transport:
            await transport.close()
            return
        await self._set_state(LISTENING)

    async def _on_transport_event(self, transport: RealtimeTransport, event) -> None:
        if transport is not self._transport:
            log.debug("Dropping %s from closed realtime session", type(event).__name__)
            return
        await self.handle(event)

    async def _barge_in(self) -> None:
        log.info("Barge-in: cancelling assistant playback")
        self._assistant_partial = ""
        await self._playback.cancel()
        if self._transport is not None:
            await self._transport.interrupt()
        await self._emit({"type": "assistant_partial", "text": ""})
        await self._set_state(LISTENING)

    # ── Helpers ───────────────────────────────────────────────

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _append(self, turn: Turn) -> list[Turn]:
        return self._history.append(turn)

    async def _record(self, turn: Turn) -> None:
        self._append(turn)
        await self._emit_turn(turn)

    async def _emit_turn(self, turn: Turn) -> None:
        await self._emit({"type": "turn", "turn": turn.model_dump(mode="json")})

    async def _set_state(self, state: ConversationState) -> None:
        if state is self._state:
            return
        log.info("State %s -> %s", self._state.value, state.value)
        self._state = state
        await self._emit({"type": "state", "state": state.value})

    async def _fail(self, message: str) -> None:
        await self._set_state(ERROR)
        await self._report_error(message)

    async def _report_error(self, message: str) -> None:
        await self._emit({"type": "error", "message": message})

    async def _emit(self, event: dict) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(event)
        except Exception as e:
            log.warning("Observer failed on %s: %s", event.get("type"), e)


def _capture_failure_message(event: CaptureFailed) -> str:
    if event.code in _PERMISSION_CODES:
        return str(CapturePermissionDenied())
    if event.code == "audio-capture":
        return str(CaptureUnsupported())
    return event.message or f"Speech capture error: {event.code}"
