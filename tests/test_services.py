"""Tests for the completion/synthesis adapters and the outbound audio queue."""

from __future__ import annotations

import pytest

from engine import llm, tts
from engine.errors import CompletionError, SynthesisError
from gateway.audio.audio_queue import AudioQueue


class TestCompletion:
    def test_build_messages_maps_text_to_content(self):
        context = [
            {"role": "user", "text": "שלום"},
            {"role": "assistant", "text": "היי"},
            {"role": "system", "text": "dropped"},
            {"role": "user", "text": ""},
        ]
        assert llm.build_messages("מה השעה", context) == [
            {"role": "user", "content": "שלום"},
            {"role": "assistant", "content": "היי"},
            {"role": "user", "content": "מה השעה"},
        ]

    async def test_complete_sends_the_persona_prompt(self, monkeypatch):
        seen = {}

        def fake_generate(system, messages, provider=""):
            seen.update(system=system, messages=messages, provider=provider)
            return "  אין לי גישה לשעון, תבדוק בטלפון  "

        monkeypatch.setattr(llm, "_generate_sync", fake_generate)
        reply = await llm.complete("מה השעה", [], "claude")

        assert reply == "אין לי גישה לשעון, תבדוק בטלפון"
        assert seen["system"] == llm.SYSTEM_PROMPT
        assert seen["messages"] == [{"role": "user", "content": "מה השעה"}]
        assert seen["provider"] == "claude"

    async def test_blank_reply_falls_back(self, monkeypatch):
        monkeypatch.setattr(llm, "_generate_sync", lambda *a: "")
        assert await llm.complete("hi", []) == llm.FALLBACK_REPLY

    async def test_provider_failure_becomes_completion_error(self, monkeypatch):
        def boom(*args):
            raise RuntimeError("HTTP 500")

        monkeypatch.setattr(llm, "_generate_sync", boom)
        with pytest.raises(CompletionError, match="HTTP 500"):
            await llm.complete("hi", [])

    async def test_empty_message_is_rejected(self):
        with pytest.raises(CompletionError):
            await llm.complete("   ", [])

    def test_explicit_provider_wins(self, monkeypatch):
        monkeypatch.setattr(llm, "LLM_PROVIDER", "ollama")
        monkeypatch.setattr(llm, "OPENAI_API_KEY", "sk-test")
        assert llm.get_provider_name() == "ollama"

    def test_auto_detect_prefers_openai(self, monkeypatch):
        monkeypatch.setattr(llm, "LLM_PROVIDER", "")
        monkeypatch.setattr(llm, "OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(llm, "ANTHROPIC_API_KEY", "sk-ant")
        assert llm.get_provider_name() == "openai"
        assert [p["id"] for p in llm.available_providers()] == ["openai", "claude", "ollama"]


class TestSynthesis:
    async def test_returns_provider_audio(self, monkeypatch):
        monkeypatch.setattr(tts, "_synthesize_sync", lambda text: b"ID3" + text.encode())
        assert await tts.synthesize("שלום") == b"ID3" + "שלום".encode()

    async def test_empty_text_is_rejected(self):
        with pytest.raises(SynthesisError):
            await tts.synthesize("  ")

    async def test_empty_audio_is_an_error(self, monkeypatch):
        monkeypatch.setattr(tts, "_synthesize_sync", lambda text: b"")
        with pytest.raises(SynthesisError):
            await tts.synthesize("hello")

    async def test_provider_failure_becomes_synthesis_error(self, monkeypatch):
        def boom(text):
            raise ConnectionError("tts down")

        monkeypatch.setattr(tts, "_synthesize_sync", boom)
        with pytest.raises(SynthesisError, match="tts down"):
            await tts.synthesize("hello")


class TestAudioQueue:
    def test_reads_across_chunks_and_pads_with_silence(self):
        queue = AudioQueue()
        queue.enqueue(b"\x01\x02")
        queue.enqueue(b"\x03")
        assert queue.available == 3
        assert queue.read(5) == b"\x01\x02\x03\x00\x00"
        assert queue.available == 0

    def test_clear_drops_everything(self):
        queue = AudioQueue()
        queue.enqueue(b"\x01" * 960)
        queue.read(10)
        queue.clear()
        assert queue.available == 0
        assert queue.read(4) == b"\x00" * 4

    def test_seconds_buffered(self):
        queue = AudioQueue()
        queue.enqueue(b"\x00" * 96000)
        assert queue.seconds_buffered == pytest.approx(1.0)
