"""Capture engine over the browser microphone: energy VAD + faster-whisper.

Behaves like a browser speech-recognition session: periodic interim
results while the user talks, one final result once they fall silent,
and a transient "no-speech" error when nobody says anything.
"""

import asyncio
import logging
from typing import Optional

import numpy as np

from engine import stt
from engine.capture import CaptureEngine, EventSink
from engine.errors import CapturePermissionDenied
from engine.types import CaptureFailed, CaptureFinal, CaptureInterim
from gateway.audio.audio_queue import SAMPLE_RATE
from gateway.webrtc import Session

log = logging.getLogger("capture")

POLL_INTERVAL = 0.1
PRE_ROLL_FRAMES = 15  # ~300ms kept from before speech starts


class WhisperCaptureEngine(CaptureEngine):
    def __init__(
        self,
        session: Session,
        *,
        language: Optional[str] = None,
        silence_ms: int = 800,
        no_speech_timeout: float = 8.0,
        interim_interval: float = 1.5,
        speech_rms: float = 500.0,
    ):
        self._session = session
        self._language = language
        self._silence = silence_ms / 1000
        self._no_speech_timeout = no_speech_timeout
        self._interim_interval = interim_interval
        self._speech_rms = speech_rms

        self._emit: Optional[EventSink] = None
        self._task: Optional[asyncio.Task] = None
        self._frames: list[bytes] = []
        self._heard = False
        self._last_voice = 0.0

    @property
    def available(self) -> bool:
        return self._session.mic_available

    async def start(self, emit: EventSink) -> None:
        if self._session.mic_denied:
            raise CapturePermissionDenied()
        self._emit = emit
        self._frames = []
        self._heard = False
        self._session.add_mic_listener(self._on_pcm)
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        self._release()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _release(self):
        self._session.remove_mic_listener(self._on_pcm)
        self._frames = []

    def _on_pcm(self, pcm: bytes):
        samples = np.frombuffer(pcm, dtype=np.int16).astype(np.float32)
        rms = float(np.sqrt(np.mean(samples ** 2))) if len(samples) else 0.0
        self._frames.append(pcm)
        if rms >= self._speech_rms:
            self._heard = True
            self._last_voice = asyncio.get_running_loop().time()
        elif not self._heard and len(self._frames) > PRE_ROLL_FRAMES:
            del self._frames[0]

    async def _transcribe(self, pcm: bytes, beam_size: int) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, stt.transcribe, pcm, SAMPLE_RATE, self._language, beam_size
        )

    async def _run(self):
        loop = asyncio.get_running_loop()
        started = loop.time()
        next_interim = started + self._interim_interval
        try:
            while True:
                await asyncio.sleep(POLL_INTERVAL)
                now = loop.time()

                if not self._heard:
                    if now - started >= self._no_speech_timeout:
                        self._release()
                        await self._emit(CaptureFailed(code="no-speech"))
                        return
                    continue

                if now - self._last_voice >= self._silence:
                    pcm = b"".join(self._frames)
                    self._release()
                    text = await self._transcribe(pcm, beam_size=5)
                    if text:
                        await self._emit(CaptureFinal(text=text))
                    else:
                        await self._emit(CaptureFailed(code="no-speech"))
                    return

                if now >= next_interim:
                    next_interim = now + self._interim_interval
                    text = await self._transcribe(b"".join(self._frames), beam_size=1)
                    if text:
                        await self._emit(CaptureInterim(text=text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Capture engine failed")
            self._release()
            await self._emit(CaptureFailed(code="engine-error", message=f"Transcription failed: {e}"))
