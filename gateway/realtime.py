"""OpenAI Realtime transport — WebRTC session relaying the browser mic.

Flow:
  1. POST /realtime/sessions for a short-lived client secret
  2. Peer connection with the relayed browser mic and an `oai-events`
     data channel; SDP offer POSTed with the ephemeral key
  3. Remote audio is pumped into the browser's output queue, data channel
     events are translated and dispatched one at a time, in order
"""

import asyncio
import json
import logging
from typing import Optional

import httpx
from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from engine.errors import TransportError
from engine.llm import SYSTEM_PROMPT
from engine.realtime import RealtimeTransport, TransportSink, parse_event
from engine.types import TransportFailure
from gateway.webrtc import Session, frame_to_pcm
from voice_persona.config import Settings, settings as default_settings

log = logging.getLogger("realtime")


def session_request(cfg: Settings) -> dict:
    return {
        "model": cfg.realtime_model,
        "voice": cfg.realtime_voice,
        "modalities": ["audio", "text"],
        "instructions": SYSTEM_PROMPT,
        "input_audio_transcription": {"model": cfg.realtime_transcription_model},
        "turn_detection": {
            "type": "server_vad",
            "threshold": cfg.realtime_vad_threshold,
            "prefix_padding_ms": cfg.realtime_prefix_padding_ms,
            "silence_duration_ms": cfg.realtime_silence_duration_ms,
        },
    }


async def issue_session(client: httpx.AsyncClient, cfg: Settings) -> str:
    """Obtain an ephemeral key for one realtime session."""
    if not cfg.openai_api_key:
        raise TransportError("OPENAI_API_KEY is not set")
    try:
        resp = await client.post(
            f"{cfg.realtime_url}/sessions",
            headers={"Authorization": f"Bearer {cfg.openai_api_key}"},
            json=session_request(cfg),
        )
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise TransportError(f"Failed to create session: {e}") from e

    secret = data.get("client_secret") if isinstance(data, dict) else None
    key = secret.get("value") if isinstance(secret, dict) else None
    if not key:
        raise TransportError("No ephemeral key in response")
    return key


class OpenAIRealtimeTransport(RealtimeTransport):
    def __init__(self, session: Session, cfg: Settings = default_settings):
        self._session = session
        self._cfg = cfg
        self._pc: Optional[RTCPeerConnection] = None
        self._dc = None
        self._emit: Optional[TransportSink] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._audio_task: Optional[asyncio.Task] = None
        self._closed = False

    async def connect(self, emit: TransportSink) -> None:
        self._emit = emit
        mic = self._session.subscribe_mic()
        if mic is None:
            raise TransportError("No microphone track from the browser")

        async with httpx.AsyncClient(timeout=self._cfg.realtime_timeout) as client:
            key = await issue_session(client, self._cfg)

            pc = RTCPeerConnection()
            self._pc = pc
            pc.addTrack(mic)

            @pc.on("track")
            def on_track(track):
                if track.kind == "audio":
                    log.info("Receiving realtime assistant audio")
                    self._audio_task = asyncio.ensure_future(self._pump_audio(track))

            @pc.on("connectionstatechange")
            def on_conn_state():
                log.info("Realtime connection state: %s", pc.connectionState)
                if pc.connectionState in ("failed", "closed") and not self._closed:
                    self._inbox.put_nowait(TransportFailure(f"Realtime connection {pc.connectionState}"))

            self._dc = pc.createDataChannel("oai-events")

            @self._dc.on("message")
            def on_message(message):
                self._inbox.put_nowait(message)

            self._dispatch_task = asyncio.ensure_future(self._dispatch())

            try:
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
                resp = await client.post(
                    f"{self._cfg.realtime_url}?model={self._cfg.realtime_model}",
                    headers={
                        "Authorization": f"Bearer {key}",
                        "Content-Type": "application/sdp",
                    },
                    content=pc.localDescription.sdp,
                )
                resp.raise_for_status()
                await pc.setRemoteDescription(RTCSessionDescription(sdp=resp.text, type="answer"))
            except httpx.HTTPError as e:
                raise TransportError(f"Failed to connect to realtime service: {e}") from e
            except ValueError as e:
                raise TransportError(f"Bad SDP answer: {e}") from e

        log.info("Realtime session established (%s)", self._cfg.realtime_model)

    async def interrupt(self) -> None:
        self._session.stop_speaking()
        if self._dc is not None and self._dc.readyState == "open":
            self._dc.send(json.dumps({"type": "response.cancel"}))
            self._dc.send(json.dumps({"type": "output_audio_buffer.clear"}))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        for task in (self._audio_task, self._dispatch_task):
            if task is not None and task is not current:
                task.cancel()
        if self._pc is not None:
            await self._pc.close()
        self._session.stop_speaking()
        log.info("Realtime session closed")

    async def _dispatch(self):
        while not self._closed:
            item = await self._inbox.get()
            event = item if isinstance(item, TransportFailure) else parse_event(item)
            if event is not None and self._emit is not None:
                await self._emit(event)

    async def _pump_audio(self, track):
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                log.info("Realtime audio track ended")
                break
            self._session.output.enqueue(frame_to_pcm(frame))
