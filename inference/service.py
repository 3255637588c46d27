"""Inference service: the command/event boundary around the arbiter.

Commands are coroutines (transcribe, generate, synthesize, preload) or
plain calls (interrupt, reset). Results are returned and also emitted as
event dicts with a "type" key so a transport can forward them as-is:

    progress    {file, progress}
    partial     {text}
    audio_chunk {samples, sample_rate}
    complete    {task, ...}
    error       {kind, message}
    lifecycle   {kind, phase}

Events produced on executor threads are marshalled onto the event loop,
so a consumer sees them in production order, exactly once.
"""

import asyncio
import logging
import threading
from functools import partial
from typing import AsyncContextManager, Callable, Dict, List, Optional

import numpy as np

from . import llm, stt, tts
from .arbiter import ResourceArbiter
from .capability import CapabilityHandle, ProgressCallback
from .errors import error_kind
from .types import AudioChunk, CapabilityKind, VoiceInfo
from .voices import VoiceStyleStore

log = logging.getLogger("service")

EventSink = Callable[[dict], None]
Factory = Callable[[ProgressCallback], CapabilityHandle]

PRELOAD_ORDER = (
    (CapabilityKind.TRANSCRIPTION, "stt_check"),
    (CapabilityKind.GENERATION, "chat_check"),
    (CapabilityKind.SYNTHESIS, "tts_check"),
)


def error_event(exc: BaseException) -> dict:
    return {"type": "error", "kind": error_kind(exc), "message": str(exc) or type(exc).__name__}


class InferenceService:
    """Owns the arbiter and the shared cancel flag for one pipeline."""

    def __init__(
        self,
        transcription: Optional[stt.TranscriptionConfig] = None,
        generation: Optional[llm.GenerationConfig] = None,
        synthesis: Optional[tts.SynthesisConfig] = None,
        arbiter: Optional[ResourceArbiter] = None,
        emit: Optional[EventSink] = None,
        factories: Optional[Dict[CapabilityKind, Factory]] = None,
    ):
        self.transcription = transcription or stt.TranscriptionConfig()
        self.generation = generation or llm.GenerationConfig()
        self.synthesis = synthesis
        self.stop = threading.Event()
        self.arbiter = arbiter or ResourceArbiter()
        self.arbiter.subscribe(self._on_lifecycle)
        self._sink = emit
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._factories: Dict[CapabilityKind, Factory] = {
            CapabilityKind.TRANSCRIPTION: lambda progress: stt.create(self.transcription, progress),
            CapabilityKind.GENERATION: lambda progress: llm.create(self.generation, progress, stop=self.stop),
            CapabilityKind.SYNTHESIS: self._create_synthesis,
        }
        self._factories.update(factories or {})

    # ── events ────────────────────────────────────────────────

    def emit(self, event: dict):
        """Deliver an event. Must be called on the loop thread."""
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            log.exception("Event sink failed on %s", event.get("type"))

    def emit_threadsafe(self, event: dict):
        """Deliver an event from any thread, preserving order."""
        loop = self._loop
        if loop is None or _on_loop_thread(loop):
            self.emit(event)
        else:
            loop.call_soon_threadsafe(self.emit, event)

    def _on_lifecycle(self, kind: CapabilityKind, phase: str):
        self.emit({"type": "lifecycle", "kind": kind.value, "phase": phase})

    def _progress(self, file: str, progress: float):
        self.emit_threadsafe({"type": "progress", "file": file, "progress": progress})

    # ── capabilities ──────────────────────────────────────────

    def _create_synthesis(self, progress: ProgressCallback) -> tts.SynthesisEngine:
        if self.synthesis is None:
            raise RuntimeError("Synthesis is not configured (no assets directory)")
        return tts.create(self.synthesis, progress)

    def _lease(self, kind: CapabilityKind) -> AsyncContextManager[CapabilityHandle]:
        self._loop = asyncio.get_running_loop()
        factory = self._factories[kind]
        return self.arbiter.use(kind, lambda: factory(self._progress))

    # ── commands ──────────────────────────────────────────────

    async def transcribe(self, audio: np.ndarray, language: Optional[str] = None,
                         sample_rate: int = stt.WHISPER_RATE) -> str:
        def on_partial(text: str):
            self.emit_threadsafe({"type": "partial", "task": "transcribe", "text": text})

        async with self._lease(CapabilityKind.TRANSCRIPTION) as handle:
            text = await self._loop.run_in_executor(
                None, partial(handle.transcribe, audio, language, sample_rate, on_partial)
            )
            chunks = list(handle.last_chunks)
        self.emit({"type": "complete", "task": "transcribe", "text": text, "chunks": chunks})
        return text

    async def generate(self, conversation) -> str:
        """Stream a reply, emitting each fragment. Returns the full reply."""
        parts = []
        async with self._lease(CapabilityKind.GENERATION) as handle:
            async for fragment in handle.stream(conversation, stop=self.stop):
                parts.append(fragment)
                self.emit({"type": "partial", "task": "generate", "text": fragment})
        reply = "".join(parts).strip()
        interrupted = self.stop.is_set()
        self.emit({"type": "complete", "task": "generate", "text": reply, "interrupted": interrupted})
        return reply

    async def synthesize(self, text: str, voice: Optional[str] = None) -> List[AudioChunk]:
        def on_chunk(chunk: AudioChunk):
            self.emit_threadsafe({
                "type": "audio_chunk",
                "samples": chunk.samples,
                "sample_rate": chunk.sample_rate,
            })

        async with self._lease(CapabilityKind.SYNTHESIS) as engine:
            results = await self._loop.run_in_executor(None, partial(engine.stream, text, voice, on_chunk))
        diagnostics = [d for r in results for d in r.diagnostics]
        self.emit({
            "type": "complete",
            "task": "synthesize",
            "chunks": len(results),
            "duration": sum(r.duration for r in results),
            "diagnostics": sorted(set(diagnostics)),
        })
        return [r.audio for r in results]

    async def preload(self):
        """Load each capability once so its weights are cached, then let go."""
        for kind, check in PRELOAD_ORDER:
            self.emit({"type": "progress", "file": check, "progress": 0})
            try:
                async with self._lease(kind):
                    pass
            except Exception as e:
                log.error("%s preload failed: %s", kind.value, e)
        await self.arbiter.release()
        self.emit({"type": "complete", "task": "preload", "message": "All models preloaded"})

    def interrupt(self):
        """Ask an in-flight generation to stop at the next fragment."""
        log.info("Interrupt requested")
        self.stop.set()

    def reset(self):
        self.stop.clear()
        handle = self.arbiter.resident
        if isinstance(handle, llm.GenerationHandle):
            handle.reset()

    def detach(self):
        """Stop receiving lifecycle events from a shared arbiter."""
        self.arbiter.unsubscribe(self._on_lifecycle)

    async def close(self):
        await self.arbiter.release()
        self.detach()

    # ── dispatch ──────────────────────────────────────────────

    async def handle(self, message: dict):
        """Run one command message. Failures become error events."""
        cmd = message.get("type") or message.get("action")
        try:
            if cmd == "transcribe":
                return await self.transcribe(
                    message["audio"],
                    message.get("language"),
                    int(message.get("sample_rate", stt.WHISPER_RATE)),
                )
            if cmd == "generate":
                return await self.generate(message.get("conversation") or message.get("text", ""))
            if cmd == "synthesize":
                return await self.synthesize(message.get("text", ""), message.get("voice"))
            if cmd == "preload":
                return await self.preload()
            if cmd == "interrupt":
                return self.interrupt()
            if cmd == "reset":
                return self.reset()
            raise ValueError(f"Unknown command: {cmd}")
        except Exception as e:
            log.error("%s failed: %s", cmd, e)
            self.emit(error_event(e))
            return None

    # ── status ────────────────────────────────────────────────

    def list_voices(self) -> List[VoiceInfo]:
        if self.synthesis is None:
            return []
        return VoiceStyleStore(self.synthesis.styles_dir, self.synthesis.default_voice).list_voices()

    def status(self) -> dict:
        kind = self.arbiter.resident_kind
        return {
            "resident": kind.value if kind else None,
            "generation_model": self.generation.model,
            "transcription_model": self.transcription.model,
            "synthesis": self.synthesis is not None,
        }


def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
