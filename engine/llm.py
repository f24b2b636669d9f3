"""Completion service — Claude, OpenAI, or Ollama, switchable via env var.

The persona system prompt is prepended here; callers only pass the user
message and the prior {role, text} context window.
"""

import asyncio
import functools
import logging
import os

from .errors import CompletionError

log = logging.getLogger("llm")

# Provider config from env
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "").lower()
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-haiku-4-5-20251001")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.2:3b")
OLLAMA_URL = os.getenv("OLLAMA_URL", "http://localhost:11434")

TEMPERATURE = 0.8
MAX_TOKENS = 500  # Keep responses short for voice

FALLBACK_REPLY = "לא הצלחתי לענות"

DEFAULT_PERSONA_PROMPT = """אתה שימי — עוזר אישי חכם בשיחה קולית.

מי אתה:
- תכל'סיסט, מדבר קונקרטי
- מבין בביזנס, תכנות והשקעות
- לא מתרפס, לא מחמיא סתם
- עברית ברירת מחדל, אנגלית כשצריך

כללים לשיחה קולית:
- תענה בקצרה! 1-3 משפטים, אלא אם מבקשים הסבר מפורט
- תכל'ס קודם, הסבר אחר כך
- אם משהו לא הגיוני, תגיד
- אל תגיד "אני לא יכול" — תנסה למצוא פתרון"""

SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", "") or DEFAULT_PERSONA_PROMPT

# Lazy-loaded clients
_anthropic_client = None
_openai_client = None
_httpx_client = None


def _resolve_provider() -> str:
    """Determine which LLM provider to use."""
    if LLM_PROVIDER in ("claude", "openai", "ollama"):
        return LLM_PROVIDER
    # Auto-detect: OpenAI > Claude > Ollama
    if OPENAI_API_KEY:
        return "openai"
    if ANTHROPIC_API_KEY:
        return "claude"
    return "ollama"


def _get_anthropic():
    global _anthropic_client
    if _anthropic_client is None:
        import anthropic
        _anthropic_client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY)
        log.info("Anthropic client initialized")
    return _anthropic_client


def _get_openai():
    global _openai_client
    if _openai_client is None:
        from openai import OpenAI
        _openai_client = OpenAI(api_key=OPENAI_API_KEY)
        log.info("OpenAI client initialized")
    return _openai_client


def _get_httpx():
    global _httpx_client
    if _httpx_client is None:
        import httpx
        _httpx_client = httpx.Client(timeout=30.0)
        log.info("httpx client initialized for Ollama at %s", OLLAMA_URL)
    return _httpx_client


# ── Generation ────────────────────────────────────────────────

def _generate_claude(system: str, messages: list[dict]) -> str:
    client = _get_anthropic()
    resp = client.messages.create(
        model=ANTHROPIC_MODEL,
        max_tokens=MAX_TOKENS,
        temperature=TEMPERATURE,
        system=system,
        messages=messages,
    )
    text = resp.content[0].text if resp.content else ""
    log.info("Claude response: %d chars, stop=%s", len(text), resp.stop_reason)
    return text


def _generate_openai(system: str, messages: list[dict]) -> str:
    client = _get_openai()
    openai_messages = [{"role": "system", "content": system}] + messages
    resp = client.chat.completions.create(
        model=OPENAI_MODEL,
        max_tokens=MAX_TOKENS,
        temperature=TEMPERATURE,
        messages=openai_messages,
    )
    text = resp.choices[0].message.content if resp.choices else ""
    log.info("OpenAI response (%s): %d chars", OPENAI_MODEL, len(text or ""))
    return text or ""


def _generate_ollama(system: str, messages: list[dict]) -> str:
    client = _get_httpx()
    ollama_messages = [{"role": "system", "content": system}] + messages
    resp = client.post(
        f"{OLLAMA_URL}/api/chat",
        json={
            "model": OLLAMA_MODEL,
            "messages": ollama_messages,
            "stream": False,
            "options": {"temperature": TEMPERATURE, "num_predict": MAX_TOKENS},
        },
    )
    resp.raise_for_status()
    text = resp.json().get("message", {}).get("content", "")
    log.info("Ollama response (%s): %d chars", OLLAMA_MODEL, len(text))
    return text


def _generate_sync(system: str, messages: list[dict], provider: str = "") -> str:
    """Synchronous generate — dispatches to the given or default provider."""
    provider = provider or _resolve_provider()
    log.info("LLM generate: provider=%s, %d messages", provider, len(messages))
    if provider == "claude":
        return _generate_claude(system, messages)
    elif provider == "openai":
        return _generate_openai(system, messages)
    else:
        return _generate_ollama(system, messages)


async def generate(system: str, messages: list[dict], provider: str = "") -> str:
    """Generate an LLM response (runs in thread pool).

    Raises CompletionError for any provider failure.
    """
    loop = asyncio.get_running_loop()
    fn = functools.partial(_generate_sync, system, messages, provider)
    try:
        return await loop.run_in_executor(None, fn)
    except Exception as e:
        raise CompletionError(f"{type(e).__name__}: {e}") from e


def build_messages(message: str, history: list[dict]) -> list[dict]:
    """Prior {role, text} pairs followed by the new user message."""
    messages = [
        {"role": h["role"], "content": h["text"]}
        for h in history
        if h.get("role") in ("user", "assistant") and h.get("text")
    ]
    messages.append({"role": "user", "content": message})
    return messages


async def complete(message: str, history: list[dict], provider: str = "") -> str:
    """Reply to `message` given the prior conversation.

    Args:
        message: The user's utterance.
        history: Prior turns as {"role": "user"/"assistant", "text": "..."}.
        provider: Override provider ("claude", "openai", "ollama").

    Returns:
        The assistant's reply, or FALLBACK_REPLY if the model returned nothing.
    """
    if not message.strip():
        raise CompletionError("No message")
    reply = await generate(SYSTEM_PROMPT, build_messages(message, history), provider)
    return reply.strip() or FALLBACK_REPLY


def available_providers() -> list[dict]:
    """Return list of available providers with their config status."""
    providers = []
    if OPENAI_API_KEY:
        providers.append({"id": "openai", "name": f"OpenAI ({OPENAI_MODEL})"})
    if ANTHROPIC_API_KEY:
        providers.append({"id": "claude", "name": f"Claude ({ANTHROPIC_MODEL})"})
    providers.append({"id": "ollama", "name": f"Ollama ({OLLAMA_MODEL})"})
    return providers


def get_provider_name() -> str:
    """Return the name of the active provider."""
    return _resolve_provider()
