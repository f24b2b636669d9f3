"""Gateway server — HTTP static serving + WebSocket signalling.

One WebSocket connection is one conversation: it owns a WebRTC session
with the browser and, once armed, a ConversationOrchestrator whose UI
events are forwarded to the socket unchanged.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from aiohttp import web
from dotenv import load_dotenv

load_dotenv()  # Must be before engine imports so they see .env vars

from engine import llm, tts
from engine.conversation import FileKeyValueStore, HistoryStore, turns_to_json
from engine.playback import AudioPlaybackController
from engine.types import Mode
from voice_persona.config import settings
from voice_persona.orchestrator import ConversationOrchestrator

log = logging.getLogger("gateway")

WEB_DIR = Path(__file__).resolve().parent.parent / "web"
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"


def ice_servers() -> list:
    try:
        servers = json.loads(settings.ice_servers_json)
    except json.JSONDecodeError:
        log.warning("ICE_SERVERS_JSON is not valid JSON, ignoring it")
        return []
    return servers if isinstance(servers, list) else []


def open_history() -> HistoryStore:
    return HistoryStore(
        FileKeyValueStore(settings.data_dir),
        key=settings.history_key,
        limit=settings.history_limit,
    )


# ── HTTP routes ───────────────────────────────────────────────

async def handle_index(request: web.Request) -> web.Response:
    index = WEB_DIR / "index.html"
    if not index.exists():
        return web.Response(status=404, text="No web client installed")
    raw = index.read_text()
    return web.Response(
        text=raw.replace("__ICE_SERVERS_PLACEHOLDER__", json.dumps(ice_servers())),
        content_type="text/html",
    )


# ── WebSocket handler ─────────────────────────────────────────

class Connection:
    """Per-socket state: WebRTC session, history and the current orchestrator."""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws
        self.session = None
        self.history = open_history()
        self.orchestrator: Optional[ConversationOrchestrator] = None
        self.llm_provider = ""  # Empty = use default from env

    async def send(self, event: dict):
        if not self.ws.closed:
            await self.ws.send_json(event)

    async def complete(self, message: str, context: list[dict]) -> str:
        return await llm.complete(message, context, self.llm_provider)

    def build_orchestrator(self, mode: Mode) -> ConversationOrchestrator:
        # Lazy import to avoid loading aiortc/whisper until a session exists
        from gateway.capture import WhisperCaptureEngine
        from gateway.realtime import OpenAIRealtimeTransport
        from gateway.webrtc import WebRTCSink

        session = self.session

        def capture_engine():
            return WhisperCaptureEngine(
                session,
                language=settings.stt_language,
                silence_ms=settings.capture_silence_ms,
                no_speech_timeout=settings.capture_no_speech_timeout,
                interim_interval=settings.capture_interim_interval,
                speech_rms=settings.capture_speech_rms,
            )

        return ConversationOrchestrator(
            mode=mode,
            history=self.history,
            playback=AudioPlaybackController(WebRTCSink(session)),
            complete=self.complete,
            synthesize=tts.synthesize,
            capture_engine=capture_engine,
            transport_factory=lambda: OpenAIRealtimeTransport(session, settings),
            on_event=self.send,
            context_limit=settings.context_limit,
            completion_timeout=settings.completion_timeout,
            synthesis_timeout=settings.synthesis_timeout,
        )

    async def orchestrator_for(self, mode: Mode) -> Optional[ConversationOrchestrator]:
        if self.session is None:
            await self.send({"type": "error", "message": "No WebRTC session"})
            return None
        if self.orchestrator is not None and self.orchestrator.mode is not mode:
            await self.orchestrator.close()
            self.orchestrator = None
        if self.orchestrator is None:
            self.orchestrator = self.build_orchestrator(mode)
            log.info("Orchestrator created (mode=%s)", mode.value)
        return self.orchestrator

    async def close(self):
        if self.orchestrator is not None:
            await self.orchestrator.close()
            self.orchestrator = None
        if self.session is not None:
            await self.session.close()
            self.session = None


def _parse_mode(value, default: Mode) -> Optional[Mode]:
    if not value:
        return default
    try:
        return Mode(value)
    except ValueError:
        return None


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    log.info("WebSocket connected from %s", request.remote)

    conn = Connection(ws)
    authed = False

    async for raw in ws:
        if raw.type != web.WSMsgType.TEXT:
            continue
        try:
            msg = json.loads(raw.data)
        except json.JSONDecodeError:
            await conn.send({"type": "error", "message": "Invalid JSON"})
            continue
        if not isinstance(msg, dict):
            await conn.send({"type": "error", "message": "Invalid message"})
            continue

        msg_type = msg.get("type")
        log.debug("WS recv: %s", msg_type)

        if msg_type == "hello":
            if msg.get("token", "") != settings.auth_token:
                await conn.send({"type": "error", "message": "Bad token"})
                await ws.close()
                break
            authed = True
            await conn.send({
                "type": "hello_ack",
                "history": turns_to_json(conn.history.load()),
                "modes": [m.value for m in Mode],
                "mode": settings.mode.value,
                "ice_servers": ice_servers(),
                "llm_providers": llm.available_providers(),
                "llm_default": llm.get_provider_name(),
            })

        elif not authed:
            await conn.send({"type": "error", "message": "Say hello first"})

        elif msg_type == "webrtc_offer":
            sdp = msg.get("sdp", "")
            if not sdp:
                await conn.send({"type": "error", "message": "Missing SDP"})
                continue
            await conn.close()
            from gateway.webrtc import Session
            conn.session = Session(ice_servers=ice_servers())
            answer_sdp = await conn.session.handle_offer(sdp)
            await conn.send({"type": "webrtc_answer", "sdp": answer_sdp})

        elif msg_type in ("arm", "ptt_start"):
            default = Mode.PUSH_TO_TALK if msg_type == "ptt_start" else settings.mode
            mode = _parse_mode(msg.get("mode"), default)
            if mode is None:
                await conn.send({"type": "error", "message": f"Unknown mode: {msg.get('mode')}"})
                continue
            orchestrator = await conn.orchestrator_for(mode)
            if orchestrator:
                await orchestrator.arm()

        elif msg_type == "ptt_stop":
            if conn.orchestrator:
                await conn.orchestrator.stop_talking()

        elif msg_type == "disarm":
            if conn.orchestrator:
                await conn.orchestrator.disarm()

        elif msg_type == "mic_denied":
            if conn.session:
                conn.session.mic_denied = True
                log.info("Browser reported microphone permission denied")

        elif msg_type == "set_provider":
            provider = msg.get("provider", "")
            if provider in ("claude", "openai", "ollama"):
                conn.llm_provider = provider
                log.info("LLM provider switched to: %s", provider)
                await conn.send({"type": "provider_set", "provider": provider})
            else:
                await conn.send({"type": "error", "message": f"Unknown provider: {provider}"})

        elif msg_type == "clear_history":
            if conn.orchestrator:
                await conn.orchestrator.clear_history()
            else:
                conn.history.clear()
                await conn.send({"type": "history_cleared"})

        elif msg_type == "ping":
            await conn.send({"type": "pong"})

        else:
            await conn.send({"type": "error", "message": f"Unknown type: {msg_type}"})

    # Cleanup on disconnect
    await conn.close()
    log.info("WebSocket disconnected")
    return ws


# ── App setup ─────────────────────────────────────────────────

def create_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", handle_index)
    app.router.add_get("/ws", handle_ws)
    if WEB_DIR.exists():
        app.router.add_static("/static", WEB_DIR, show_index=False)
    return app


def main():
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / "server.log"

    fmt = logging.Formatter("%(asctime)s %(name)-12s %(levelname)-8s %(message)s")

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)

    filelog = logging.FileHandler(log_file)
    filelog.setLevel(logging.INFO)
    filelog.setFormatter(fmt)

    logging.basicConfig(level=logging.INFO, handlers=[console, filelog])

    # Silence noisy third-party internals
    for name in ("aiortc", "aioice", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    log.info("Logging to %s", log_file)

    log.info("Serving on http://0.0.0.0:%d (default mode: %s)", settings.port, settings.mode.value)
    web.run_app(create_app(), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
