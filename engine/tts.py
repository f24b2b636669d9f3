"""Synthesis service — text to encoded audio (OpenAI mp3, or local Piper wav)."""

import asyncio
import functools
import io
import logging
import os
import urllib.request
import wave
from pathlib import Path

from .errors import SynthesisError

log = logging.getLogger("tts")

TTS_PROVIDER = os.getenv("TTS_PROVIDER", "").lower()
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_TTS_MODEL = os.getenv("OPENAI_TTS_MODEL", "tts-1")
OPENAI_TTS_VOICE = os.getenv("OPENAI_TTS_VOICE", "onyx")  # Deep male voice, fits the persona
OPENAI_TTS_SPEED = 1.1  # Slightly faster for conversational feel

MODEL_DIR = Path(__file__).resolve().parent.parent / "models"

# Piper voices: https://huggingface.co/rhasspy/piper-voices
PIPER_VOICE = os.getenv("PIPER_VOICE", "en_US-lessac-medium")
_PIPER_URL = "https://huggingface.co/rhasspy/piper-voices/resolve/main/{path}/{id}"

_openai_client = None
_piper_cache: dict = {}


def _resolve_provider() -> str:
    if TTS_PROVIDER in ("openai", "piper"):
        return TTS_PROVIDER
    return "openai" if OPENAI_API_KEY else "piper"


def _get_openai():
    global _openai_client
    if _openai_client is None:
        from openai import OpenAI
        _openai_client = OpenAI(api_key=OPENAI_API_KEY)
        log.info("OpenAI client initialized for TTS")
    return _openai_client


def _synthesize_openai(text: str) -> bytes:
    client = _get_openai()
    resp = client.audio.speech.create(
        model=OPENAI_TTS_MODEL,
        voice=OPENAI_TTS_VOICE,
        input=text,
        response_format="mp3",
        speed=OPENAI_TTS_SPEED,
    )
    audio = resp.content
    log.info("OpenAI TTS: %d chars -> %d bytes mp3", len(text), len(audio))
    return audio


def _piper_model_path(voice_id: str) -> Path:
    """Download the Piper ONNX model + config if not already on disk."""
    MODEL_DIR.mkdir(parents=True, exist_ok=True)
    # Voice ids look like <locale>-<name>-<quality>, e.g. en_US-lessac-medium
    locale, name, quality = voice_id.split("-", 2)
    remote_dir = f"{locale.split('_')[0]}/{locale}/{name}/{quality}"

    onnx_path = MODEL_DIR / f"{voice_id}.onnx"
    for suffix in (".onnx", ".onnx.json"):
        local = MODEL_DIR / f"{voice_id}{suffix}"
        if not local.exists():
            log.info("Downloading Piper voice file: %s", local.name)
            urllib.request.urlretrieve(
                _PIPER_URL.format(path=remote_dir, id=local.name), local
            )
    return onnx_path


def _get_piper(voice_id: str):
    if voice_id in _piper_cache:
        return _piper_cache[voice_id]

    from piper import PiperVoice

    model_path = _piper_model_path(voice_id)
    voice = PiperVoice.load(str(model_path))
    log.info("Piper voice loaded: %s (native rate: %d Hz)", voice_id, voice.config.sample_rate)
    _piper_cache[voice_id] = voice
    return voice


def _synthesize_piper(text: str) -> bytes:
    """Piper PCM chunks wrapped in a WAV container at the voice's native rate."""
    voice = _get_piper(PIPER_VOICE)
    pcm = b"".join(chunk.audio_int16_bytes for chunk in voice.synthesize(text))
    if not pcm:
        raise SynthesisError(f"Piper produced no audio for {text[:50]!r}")

    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(voice.config.sample_rate)
        wav.writeframes(pcm)
    log.info("Piper TTS: %d chars -> %d bytes wav", len(text), buf.tell())
    return buf.getvalue()


def _synthesize_sync(text: str) -> bytes:
    if _resolve_provider() == "openai":
        return _synthesize_openai(text)
    return _synthesize_piper(text)


async def synthesize(text: str) -> bytes:
    """Convert reply text to playable encoded audio (runs in thread pool).

    Raises SynthesisError on empty input or any provider failure.
    """
    if not text.strip():
        raise SynthesisError("No text")
    loop = asyncio.get_running_loop()
    try:
        audio = await loop.run_in_executor(None, functools.partial(_synthesize_sync, text))
    except SynthesisError:
        raise
    except Exception as e:
        raise SynthesisError(f"{type(e).__name__}: {e}") from e
    if not audio:
        raise SynthesisError("Synthesis returned no audio")
    return audio
