"""Voice loop REPL: text or WAV in, spoken reply out.

Run with: python -m assistant.main [--debug] [--voice M3]

Features:
  - Rich colored output (green=user, blue=assistant, dim=lifecycle)
  - Streams the reply as it is generated
  - Each reply is written to logs/replies/<n>.wav
  - Commands: /wav <path>, /voice <id>, /voices, clear, quit/exit/q
"""

import argparse
import asyncio
import logging
from pathlib import Path

from rich.console import Console

from inference.audio import concat, read_wav, write_wav
from inference.conversation import ConversationHistory
from inference.service import InferenceService

from .config import PROJECT_ROOT, settings
from .orchestrator import SessionOrchestrator

console = Console()

REPLY_DIR = PROJECT_ROOT / "logs" / "replies"


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    # Keep HTTP-level chatter out of debug output
    if debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


class ConsoleEvents:
    """Renders service events on the console."""

    def __init__(self):
        self.streaming = False

    def __call__(self, event: dict) -> None:
        kind = event.get("type")
        if kind == "partial" and event.get("task") == "generate":
            if not self.streaming:
                console.print("[bold blue]Assistant:[/] ", end="")
                self.streaming = True
            console.print(event["text"], end="", markup=False, highlight=False)
        elif kind == "partial" and event.get("task") == "transcribe":
            console.print(f"  [dim]heard: {event['text']}[/]")
        elif kind == "complete" and event.get("task") == "generate":
            if self.streaming:
                console.print()
            self.streaming = False
        elif kind == "complete" and event.get("task") == "transcribe":
            console.print(f"[bold green]You (voice):[/] {event['text']}")
        elif kind == "lifecycle":
            console.print(f"  [dim]{event['kind']}: {event['phase']}[/]")
        elif kind == "progress" and event.get("progress", 0) >= 100:
            console.print(f"  [dim]loaded {event['file']}[/]")
        elif kind == "error":
            console.print(f"[yellow]{event['message']}[/]")


def _save_reply(turn, index: int) -> Path:
    path = write_wav(REPLY_DIR / f"{index:03d}.wav", concat(turn.audio))
    console.print(f"  [dim]audio: {path} ({sum(c.duration for c in turn.audio):.1f}s)[/]\n")
    return path


async def _run_repl(voice: str) -> None:
    service = InferenceService(
        transcription=settings.transcription_config(),
        generation=settings.generation_config(),
        synthesis=settings.synthesis_config(),
        emit=ConsoleEvents(),
    )
    history = ConversationHistory(settings.generation_config().system_prompt, settings.max_history_turns)
    orchestrator = SessionOrchestrator(service, history, voice=voice, language=settings.speech_language)
    replies = 0

    console.print(f"[bold]Voice Loop[/] [dim]({settings.ollama_model}, voice {voice})[/]")
    console.print("[dim]Type text to talk, '/wav <file>' to speak from a recording, "
                  "'clear' to reset, 'quit' to exit.[/]\n")

    try:
        while True:
            try:
                user_input = console.input("[bold green]You:[/] ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/]")
                break

            if not user_input:
                continue
            lowered = user_input.lower()
            if lowered in ("quit", "exit", "q"):
                console.print("[dim]Goodbye![/]")
                break
            if lowered == "clear":
                orchestrator.reset()
                console.print("[dim]Conversation cleared.[/]\n")
                continue
            if lowered == "/voices":
                for v in service.list_voices():
                    mark = "*" if v.id == orchestrator.voice else " "
                    console.print(f"  {mark} [cyan]{v.id}[/]")
                continue
            if lowered.startswith("/voice "):
                orchestrator.voice = user_input.split(maxsplit=1)[1]
                console.print(f"[dim]Voice set to {orchestrator.voice}.[/]\n")
                continue

            if lowered.startswith("/wav "):
                try:
                    samples, rate = read_wav(user_input.split(maxsplit=1)[1])
                except Exception as e:
                    console.print(f"[red]Cannot read WAV: {e}[/]\n")
                    continue
                pending = orchestrator.process_audio(samples, rate)
            else:
                pending = orchestrator.process_text(user_input)

            try:
                turn = await pending
            except Exception:
                # Already shown via the error event
                console.print()
                continue

            if turn is not None and turn.audio:
                replies += 1
                _save_reply(turn, replies)
    finally:
        await service.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Voice Loop REPL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--voice", default=settings.default_voice, help="Voice style id")
    args = parser.parse_args()

    _setup_logging(args.debug)
    asyncio.run(_run_repl(args.voice))


if __name__ == "__main__":
    main()
