"""FIFO of outbound PCM for the WebRTC track.

Producers (reply playback, realtime remote audio) enqueue variable-length
blobs; the track drains 20ms frames from the front and gets silence when
the queue is empty. Barge-in and cancellation clear it in one step.
"""

import threading
from collections import deque

SAMPLE_RATE = 48000
BYTES_PER_SECOND = SAMPLE_RATE * 2  # mono int16


class AudioQueue:
    def __init__(self):
        self._chunks: deque[bytes] = deque()
        self._current = b""  # Partially-consumed chunk
        self._offset = 0
        self._lock = threading.Lock()

    @property
    def available(self) -> int:
        """Bytes still waiting to be played."""
        with self._lock:
            return len(self._current) - self._offset + sum(len(c) for c in self._chunks)

    @property
    def seconds_buffered(self) -> float:
        return self.available / BYTES_PER_SECOND

    def enqueue(self, data: bytes):
        if not data:
            return
        with self._lock:
            self._chunks.append(data)

    def read(self, n: int) -> bytes:
        """Read exactly n bytes; anything past the queued audio is silence."""
        with self._lock:
            result = bytearray(n)
            written = 0
            while written < n:
                if self._offset >= len(self._current):
                    if not self._chunks:
                        break
                    self._current = self._chunks.popleft()
                    self._offset = 0
                to_copy = min(len(self._current) - self._offset, n - written)
                result[written:written + to_copy] = self._current[self._offset:self._offset + to_copy]
                self._offset += to_copy
                written += to_copy
            return bytes(result)

    def clear(self):
        with self._lock:
            self._chunks.clear()
            self._current = b""
            self._offset = 0
