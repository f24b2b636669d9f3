"""Faster-Whisper STT wrapper — PCM bytes to text for the capture engine."""

import logging
import os

import numpy as np
from scipy.signal import resample

log = logging.getLogger("stt")

MODEL_SIZE = os.getenv("WHISPER_MODEL", "small")  # multilingual; "base" is too weak for Hebrew
WHISPER_RATE = 16000

# Lazy-loaded Whisper model
_model = None


def _get_model():
    """Load the faster-whisper model on first use (auto-downloads)."""
    global _model
    if _model is not None:
        return _model

    from faster_whisper import WhisperModel

    log.info("Loading faster-whisper model: %s ...", MODEL_SIZE)
    _model = WhisperModel(MODEL_SIZE, device="cpu", compute_type="int8")
    log.info("Whisper model loaded: %s", MODEL_SIZE)
    return _model


def pcm_to_float(audio_bytes: bytes, sample_rate: int) -> np.ndarray:
    """int16 PCM at any rate -> float32 [-1, 1] at 16 kHz."""
    samples = np.frombuffer(audio_bytes, dtype=np.int16).astype(np.float32) / 32768.0
    if sample_rate != WHISPER_RATE and len(samples):
        num_output = int(len(samples) * WHISPER_RATE / sample_rate)
        samples = resample(samples, num_output).astype(np.float32)
    return samples


def transcribe(
    audio_bytes: bytes,
    sample_rate: int = 48000,
    language: str | None = None,
    beam_size: int = 5,
) -> str:
    """Transcribe mono int16 PCM to text.

    Args:
        audio_bytes: Raw PCM int16 mono audio bytes.
        sample_rate: Sample rate of the audio (48kHz from WebRTC).
        language: ISO code, or None to let Whisper detect it.
        beam_size: 1 for cheap interim passes, 5 for the final pass.

    Returns:
        Transcribed text, or "" if nothing was recognised.
    """
    if not audio_bytes:
        return ""

    samples = pcm_to_float(audio_bytes, sample_rate)
    log.debug("Transcribing %.2fs of audio", len(samples) / WHISPER_RATE)

    segments, info = _get_model().transcribe(samples, beam_size=beam_size, language=language)
    result = " ".join(segment.text.strip() for segment in segments).strip()
    log.info("Transcription [%s]: %r", info.language, result[:100])
    return result
