"""Settings for the conversation orchestrator and gateway.

Uses pydantic-settings to load from the project's .env file, with type
validation and defaults for a local single-user setup.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

from engine.types import Mode

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    mode: Mode = Mode.CONTINUOUS

    # History: persisted log vs. context window sent to the model
    history_limit: int = 200
    context_limit: int = 40
    data_dir: Path = PROJECT_ROOT / "data"
    history_key: str = "conversation_history"

    # Timeouts (seconds) for external calls; exceeding one fails the turn
    completion_timeout: float = 30.0
    synthesis_timeout: float = 30.0

    # Gateway
    port: int = 8080
    auth_token: str = "devtoken"
    ice_servers_json: str = "[]"

    # Capture engine (browser mic over WebRTC + faster-whisper)
    stt_language: str | None = None
    capture_silence_ms: int = 800
    capture_no_speech_timeout: float = 8.0
    capture_interim_interval: float = 1.5
    capture_speech_rms: float = 500.0

    # Realtime variant
    openai_api_key: str = ""
    realtime_url: str = "https://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview-2025-06-03"
    realtime_voice: str = "ash"
    realtime_transcription_model: str = "whisper-1"
    realtime_vad_threshold: float = 0.5
    realtime_prefix_padding_ms: int = 300
    realtime_silence_duration_ms: int = 500
    realtime_timeout: float = 15.0

    model_config = {
        "env_file": str(PROJECT_ROOT / ".env"),
        "extra": "ignore",
    }


settings = Settings()
