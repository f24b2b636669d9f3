"""Outbound aiortc audio track fed from an AudioQueue."""

import asyncio
import time
from fractions import Fraction

import numpy as np
from aiortc import MediaStreamTrack
from av import AudioFrame

from .audio_queue import AudioQueue, SAMPLE_RATE

FRAME_SAMPLES = 960  # 20ms at 48kHz
PTIME = FRAME_SAMPLES / SAMPLE_RATE


class QueueAudioTrack(MediaStreamTrack):
    """Server-to-browser audio: queued PCM, or silence when nothing is queued.

    aiortc calls recv() roughly every 20ms; frames are paced against a
    monotonic clock so the queue drains in real time.
    """

    kind = "audio"

    def __init__(self, queue: AudioQueue):
        super().__init__()
        self.queue = queue
        self._start_time = None
        self._frame_count = 0

    async def recv(self) -> AudioFrame:
        if self._start_time is None:
            self._start_time = time.monotonic()

        target_time = self._start_time + self._frame_count * PTIME
        now = time.monotonic()
        if target_time > now:
            await asyncio.sleep(target_time - now)

        pcm = self.queue.read(FRAME_SAMPLES * 2)
        samples = np.frombuffer(pcm, dtype=np.int16)

        frame = AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._frame_count * FRAME_SAMPLES
        frame.time_base = Fraction(1, SAMPLE_RATE)
        self._frame_count += 1
        return frame
