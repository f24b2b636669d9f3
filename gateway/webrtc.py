"""WebRTC session with the browser — mic in, assistant audio out."""

import asyncio
import io
import logging
from typing import Callable, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

from engine.playback import AudioSink
from gateway.audio.audio_queue import SAMPLE_RATE, AudioQueue
from gateway.audio.webrtc_audio_source import QueueAudioTrack

log = logging.getLogger("webrtc")

# Extra time a clip may take to drain before playback gives up on the peer
DRAIN_GRACE = 2.0

MicListener = Callable[[bytes], None]


def ice_servers_to_rtc(servers: list) -> list:
    """Convert ICE server dicts to RTCIceServer objects."""
    result = []
    for s in servers:
        urls = s.get("urls", s.get("url", ""))
        if isinstance(urls, str):
            urls = [urls]
        result.append(RTCIceServer(
            urls=urls,
            username=s.get("username", ""),
            credential=s.get("credential", ""),
        ))
    return result


def frame_to_pcm(frame) -> bytes:
    """av.AudioFrame (any sample format / layout) -> mono int16 bytes."""
    arr = frame.to_ndarray()
    # Float formats (fltp/flt) need scaling to int16
    if arr.dtype in (np.float32, np.float64):
        arr = (arr * 32767).clip(-32768, 32767).astype(np.int16)
    if arr.shape[0] > 1:
        # Planar: one row per channel
        flat = arr[0]
    else:
        # Packed: channels interleaved in a single row
        flat = arr.flatten()
        channels = flat.shape[0] // frame.samples if frame.samples else 1
        if channels > 1:
            flat = flat[::channels]
    return flat.astype(np.int16).tobytes()


def decode_audio(data: bytes) -> bytes:
    """Decode an encoded clip (mp3, wav, ...) to 48kHz mono int16 PCM."""
    resampler = av.AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
    parts = []
    with av.open(io.BytesIO(data)) as container:
        for frame in container.decode(audio=0):
            for out in resampler.resample(frame):
                parts.append(out.to_ndarray().tobytes())
    for out in resampler.resample(None):
        parts.append(out.to_ndarray().tobytes())
    return b"".join(parts)


class Session:
    """Manages one browser peer connection.

    The browser's microphone track is fanned out through a MediaRelay:
    one subscriber feeds registered PCM listeners (the capture engine),
    others can be handed to a realtime transport.
    """

    def __init__(self, ice_servers: list = None):
        rtc_servers = ice_servers_to_rtc(ice_servers or [])
        config = RTCConfiguration(iceServers=rtc_servers) if rtc_servers else RTCConfiguration()
        self._pc = RTCPeerConnection(configuration=config)
        self.output = AudioQueue()
        self._output_track = QueueAudioTrack(self.output)

        self._relay = MediaRelay()
        self._mic_track: Optional[MediaStreamTrack] = None
        self._mic_recv_task: Optional[asyncio.Task] = None
        self._mic_listeners: list[MicListener] = []
        self.mic_denied = False

        @self._pc.on("connectionstatechange")
        async def on_conn_state():
            log.info("Connection state: %s", self._pc.connectionState)

        @self._pc.on("iceconnectionstatechange")
        async def on_ice_state():
            log.info("ICE connection state: %s", self._pc.iceConnectionState)

        @self._pc.on("track")
        def on_track(track):
            if track.kind != "audio":
                return
            log.info("Received remote audio track from browser mic")
            self._mic_track = track
            self._mic_recv_task = asyncio.ensure_future(
                self._recv_mic_audio(self._relay.subscribe(track))
            )

    @property
    def mic_available(self) -> bool:
        return self._mic_track is not None

    async def handle_offer(self, sdp: str) -> str:
        """Process client SDP offer, return SDP answer.

        aiortc bundles all ICE candidates into the answer SDP
        automatically (no trickle ICE support).
        """
        self._pc.addTrack(self._output_track)
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        log.info("SDP answer created")
        return self._pc.localDescription.sdp

    def subscribe_mic(self) -> Optional[MediaStreamTrack]:
        """A fresh relayed copy of the browser mic, or None if there is none."""
        if self._mic_track is None:
            return None
        return self._relay.subscribe(self._mic_track)

    def add_mic_listener(self, listener: MicListener):
        self._mic_listeners.append(listener)

    def remove_mic_listener(self, listener: MicListener):
        if listener in self._mic_listeners:
            self._mic_listeners.remove(listener)

    def stop_speaking(self):
        """Drop all queued assistant audio."""
        self.output.clear()
        log.info("Output queue cleared")

    async def _recv_mic_audio(self, track):
        """Background task: deliver browser mic frames to listeners as mono PCM."""
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                log.info("Mic track ended")
                break
            if not self._mic_listeners:
                continue
            pcm = frame_to_pcm(frame)
            for listener in list(self._mic_listeners):
                listener(pcm)

    async def close(self):
        self._mic_listeners.clear()
        self.output.clear()
        if self._mic_recv_task:
            self._mic_recv_task.cancel()
        await self._pc.close()
        log.info("Session closed")


class WebRTCSink(AudioSink):
    """Plays encoded clips on the session's outbound track."""

    def __init__(self, session: Session):
        self._session = session

    async def play(self, audio: bytes) -> None:
        loop = asyncio.get_running_loop()
        pcm = await loop.run_in_executor(None, decode_audio, audio)
        if not pcm:
            raise ValueError("Clip decoded to no audio")

        self._session.output.enqueue(pcm)
        # Settle once drained; the deadline covers a peer that stopped reading
        deadline = loop.time() + self._session.output.seconds_buffered + DRAIN_GRACE
        while self._session.output.available > 0:
            if loop.time() > deadline:
                log.warning("Output did not drain in time, dropping the rest")
                self._session.output.clear()
                break
            await asyncio.sleep(0.05)

    async def stop(self) -> None:
        self._session.stop_speaking()
