"""Terminal REPL — talk to the persona by typing.

Run with: python -m voice_persona.main [--debug] [--save-audio DIR]

Each typed line is handled as a final transcript, so the full
completion -> history -> synthesis -> playback cycle runs exactly as
it does for speech. Spoken replies are discarded, or written to
--save-audio as numbered clips.

Commands: quit/exit/q, clear, history
"""

from __future__ import annotations

import argparse
import asyncio
import itertools
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()  # Must be before engine imports so they see .env vars

from rich.console import Console

from engine import llm, tts
from engine.conversation import FileKeyValueStore, HistoryStore
from engine.playback import AudioPlaybackController, AudioSink
from engine.types import Mode, Role
from .config import settings
from .orchestrator import ConversationOrchestrator

console = Console()


class ReplSink(AudioSink):
    """Stands in for a speaker: drops clips or saves them to a directory."""

    def __init__(self, directory: Optional[Path] = None):
        self._directory = directory
        self._counter = itertools.count(1)

    async def play(self, audio: bytes) -> None:
        if self._directory is None:
            return
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / f"reply-{next(self._counter):03d}.audio"
        path.write_bytes(audio)
        console.print(f"  [dim]audio saved: {path}[/]")

    async def stop(self) -> None:
        pass


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    # Suppress noisy HTTP-level debug logs
    if debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _render(event: dict) -> None:
    kind = event.get("type")
    if kind == "turn" and event["turn"]["role"] == Role.ASSISTANT.value:
        console.print(f"[bold blue]Shimi:[/] {event['turn']['text']}\n")
    elif kind == "error":
        console.print(f"[red]Error: {event['message']}[/]\n")


def _print_history(history: HistoryStore) -> None:
    turns = history.load()
    if not turns:
        console.print("[dim]No history yet.[/]\n")
        return
    for turn in turns:
        colour = "green" if turn.role is Role.USER else "blue"
        stamp = turn.created_at.astimezone().strftime("%H:%M")
        console.print(f"[dim]{stamp}[/] [{colour}]{turn.role.value}:[/] {turn.text}")
    console.print()


async def _run_repl(save_audio: Optional[Path]) -> None:
    history = HistoryStore(
        FileKeyValueStore(settings.data_dir),
        key=settings.history_key,
        limit=settings.history_limit,
    )
    orchestrator = ConversationOrchestrator(
        mode=Mode.PUSH_TO_TALK,
        history=history,
        playback=AudioPlaybackController(ReplSink(save_audio)),
        complete=llm.complete,
        synthesize=tts.synthesize,
        on_event=_render,
        context_limit=settings.context_limit,
        completion_timeout=settings.completion_timeout,
        synthesis_timeout=settings.synthesis_timeout,
    )

    console.print(f"[bold]Shimi[/] [dim]({llm.get_provider_name()}, {len(history.load())} turns in history)[/]")
    console.print("[dim]Type 'quit' to exit, 'clear' to reset history, 'history' to show it.[/]\n")

    try:
        while True:
            try:
                user_input = console.input("[bold green]You:[/] ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/]")
                break

            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                console.print("[dim]Goodbye![/]")
                break
            if user_input.lower() == "clear":
                await orchestrator.clear_history()
                console.print("[dim]Conversation cleared.[/]\n")
                continue
            if user_input.lower() == "history":
                _print_history(history)
                continue

            with console.status("[dim]Thinking...[/]", spinner="dots"):
                await orchestrator.submit(user_input)
                await orchestrator.wait_for_turn()
    finally:
        await orchestrator.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Shimi voice persona REPL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--save-audio", type=Path, default=None, help="Directory for spoken replies")
    args = parser.parse_args()

    _setup_logging(args.debug)
    asyncio.run(_run_repl(args.save_audio))


if __name__ == "__main__":
    main()
