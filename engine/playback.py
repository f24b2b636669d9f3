"""Audio playback controller — plays one synthesized clip at a time.

play() always settles with exactly one PlaybackOutcome, even when the
sink rejects the audio before it starts, so callers never block on it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

log = logging.getLogger("playback")


class PlaybackOutcome(str, Enum):
    ENDED = "ended"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class AudioSink(ABC):
    """Where encoded audio actually goes (speaker, WebRTC track, ...)."""

    @abstractmethod
    async def play(self, audio: bytes) -> None:
        """Play encoded audio, returning once it has finished.

        Raises on decode/codec failure.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Silence output immediately and drop any buffered audio."""


class _Playback:
    def __init__(self, task: asyncio.Task):
        self.task = task
        self.cancel_requested = False


class AudioPlaybackController:
    def __init__(self, sink: AudioSink):
        self._sink = sink
        self._current: Optional[_Playback] = None

    @property
    def playing(self) -> bool:
        return self._current is not None

    async def play(self, audio: bytes) -> PlaybackOutcome:
        if self._current is not None:
            await self.cancel()

        if not audio:
            log.warning("Refusing to play empty audio")
            return PlaybackOutcome.ERRORED

        playback = _Playback(asyncio.ensure_future(self._sink.play(audio)))
        self._current = playback
        try:
            await playback.task
        except asyncio.CancelledError:
            if not playback.cancel_requested:
                raise
            log.info("Playback cancelled")
            return PlaybackOutcome.CANCELLED
        except Exception as e:
            log.error("Playback failed: %s", e)
            return PlaybackOutcome.ERRORED
        finally:
            if self._current is playback:
                self._current = None

        log.info("Playback ended (%d bytes)", len(audio))
        return PlaybackOutcome.ENDED

    async def cancel(self) -> None:
        """Stop the current clip now (barge-in / disarm)."""
        playback = self._current
        if playback is not None:
            self._current = None
            playback.cancel_requested = True
            playback.task.cancel()
        try:
            await self._sink.stop()
        except Exception as e:
            log.warning("Audio sink did not stop cleanly: %s", e)
