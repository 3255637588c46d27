"""Session orchestrator: one spoken turn at a time.

Core flow:
  1. Raw audio in, transcription capability acquired, text out
  2. Transcript appended to a snapshot of the history, reply streamed
  3. Reply synthesized sentence by sentence
  4. Turn committed to history, back to IDLE

Only one turn runs at a time. A submission that arrives while a turn is
in flight is dropped, not queued.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import numpy as np

from inference.conversation import ConversationHistory, PendingTurn
from inference.errors import NoSpeechError
from inference.service import InferenceService, error_event
from inference.stt import WHISPER_RATE

log = logging.getLogger("orchestrator")


class TurnState(str, Enum):
    IDLE = "idle"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    ERROR = "error"


class SessionOrchestrator:
    """Runs transcribe -> generate -> synthesize under a single lock."""

    def __init__(
        self,
        service: InferenceService,
        history: Optional[ConversationHistory] = None,
        voice: Optional[str] = None,
        language: Optional[str] = None,
    ):
        self.service = service
        self.history = history or ConversationHistory(service.generation.system_prompt)
        self.voice = voice
        self.language = language
        self._lock = asyncio.Lock()
        self._state = TurnState.IDLE

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _set_state(self, state: TurnState):
        if state == self._state:
            return
        log.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self.service.emit({"type": "state", "state": state.value})

    async def process_audio(self, audio: np.ndarray, sample_rate: int = WHISPER_RATE) -> Optional[PendingTurn]:
        """Run one full turn from a raw audio segment.

        Returns the completed turn, or None when the submission was dropped
        or held no speech.
        """
        if self._lock.locked():
            log.warning("Turn in progress, dropping audio segment")
            return None
        async with self._lock:
            return await self._run(audio=audio, sample_rate=sample_rate)

    async def process_text(self, text: str) -> Optional[PendingTurn]:
        """Run a turn from already-transcribed text (generate + synthesize)."""
        if self._lock.locked():
            log.warning("Turn in progress, dropping text submission")
            return None
        async with self._lock:
            return await self._run(text=text)

    async def _run(self, audio=None, sample_rate: int = WHISPER_RATE, text: Optional[str] = None):
        try:
            if text is None:
                self._set_state(TurnState.TRANSCRIBING)
                text = await self.service.transcribe(audio, self.language, sample_rate)
            turn = self.history.begin(text)

            self._set_state(TurnState.GENERATING)
            turn.reply = await self.service.generate(turn.messages())

            if self.service.stop.is_set():
                log.info("Reply interrupted, skipping synthesis")
            elif turn.reply:
                self._set_state(TurnState.SYNTHESIZING)
                turn.audio = await self.service.synthesize(turn.reply, self.voice)

            self.history.commit(turn)
            self._set_state(TurnState.IDLE)
            return turn
        except NoSpeechError as e:
            log.info("No speech in segment: %r", e.text)
            self.service.emit(error_event(e))
            self._set_state(TurnState.IDLE)
            return None
        except Exception as e:
            log.error("Turn failed in %s: %s", self._state.value, e)
            self._set_state(TurnState.ERROR)
            self.service.emit(error_event(e))
            raise

    def interrupt(self):
        self.service.interrupt()

    def reset(self):
        """Forget the conversation and any half-finished generation state."""
        self.history.clear()
        self.service.reset()
