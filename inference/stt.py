"""Faster-Whisper transcription capability: float32 audio to text."""

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from scipy.signal import resample

from .capability import CapabilityHandle, ProgressCallback
from .errors import NoSpeechError
from .types import CapabilityKind

log = logging.getLogger("stt")

WHISPER_RATE = 16000  # faster-whisper expects 16kHz input
MIN_TEXT_CHARS = 2

# Whole output is one or more non-speech markers: "(inaudible)", "[BLANK_AUDIO]", "(music) [noise]"
_MARKERS_ONLY_RE = re.compile(r"^\s*(?:[\(\[\{\*][^\)\]\}\*]*[\)\]\}\*]\s*)+$")

_LANGUAGE_NAMES = {
    "english": "en",
    "korean": "ko",
    "spanish": "es",
    "portuguese": "pt",
    "french": "fr",
    "german": "de",
    "italian": "it",
    "japanese": "ja",
    "chinese": "zh",
}


@dataclass(frozen=True)
class TranscriptionConfig:
    model: str = "large-v3-turbo"
    device: str = "auto"
    compute_type: str = "default"
    language: str = "en"
    beam_size: int = 5


def is_no_speech(text: str) -> bool:
    """True for outputs that are noise rather than speech."""
    text = (text or "").strip()
    if len(text) < MIN_TEXT_CHARS:
        return True
    return bool(_MARKERS_ONLY_RE.match(text))


def normalize_language(language: Optional[str]) -> Optional[str]:
    """Accept 'en' or 'english'; None lets Whisper detect."""
    if not language:
        return None
    language = language.strip().lower()
    return _LANGUAGE_NAMES.get(language, language)


def to_whisper_rate(samples: np.ndarray, sample_rate: int) -> np.ndarray:
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if sample_rate == WHISPER_RATE or samples.size == 0:
        return samples
    num_output = int(len(samples) * WHISPER_RATE / sample_rate)
    log.debug("Resampling %d samples @ %dHz -> %d @ %dHz",
              len(samples), sample_rate, num_output, WHISPER_RATE)
    return resample(samples, num_output).astype(np.float32)


class TranscriptionHandle(CapabilityHandle):
    """Owns one WhisperModel."""

    kind = CapabilityKind.TRANSCRIPTION

    def __init__(self, model, config: TranscriptionConfig):
        super().__init__()
        self.model = model
        self.config = config
        # Segments of the most recent call: {text, timestamp: [start, end]}
        self.last_chunks: List[dict] = []

    def transcribe(
        self,
        audio: np.ndarray,
        language: Optional[str] = None,
        sample_rate: int = WHISPER_RATE,
        on_partial: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Transcribe mono float32 audio.

        Raises NoSpeechError when the result is empty or only noise markers.
        """
        if self.closed:
            raise RuntimeError("Transcription model has been disposed")
        samples = to_whisper_rate(audio, sample_rate)
        log.debug("Transcribing %.2fs of audio", samples.size / WHISPER_RATE)
        if samples.size == 0:
            raise NoSpeechError("")

        segments, info = self.model.transcribe(
            samples,
            beam_size=self.config.beam_size,
            language=normalize_language(language or self.config.language),
            task="transcribe",
        )

        text_parts = []
        self.last_chunks = []
        for segment in segments:
            part = segment.text.strip()
            if not part:
                continue
            text_parts.append(part)
            self.last_chunks.append({"text": part, "timestamp": [segment.start, segment.end]})
            if on_partial:
                on_partial(" ".join(text_parts))

        result = " ".join(text_parts).strip()
        if is_no_speech(result):
            log.warning("Ignored noise/hallucination: %r", result)
            raise NoSpeechError(result)
        log.info("Transcription: %r", result[:100])
        return result

    def _release(self) -> None:
        model, self.model = self.model, None
        # CTranslate2 keeps weights on the device until explicitly unloaded
        inner = getattr(model, "model", None)
        if inner is not None:
            inner.unload_model()
        log.info("Whisper model released")


def create(config: TranscriptionConfig, progress: ProgressCallback = None) -> TranscriptionHandle:
    """Load the faster-whisper model (downloads on first run)."""
    from faster_whisper import WhisperModel

    if progress:
        progress(config.model, 0.0)
    log.info("Loading faster-whisper model: %s (%s, %s)...",
             config.model, config.device, config.compute_type)
    model = WhisperModel(config.model, device=config.device, compute_type=config.compute_type)
    if progress:
        progress(config.model, 100.0)
    log.info("Whisper model loaded: %s", config.model)
    return TranscriptionHandle(model, config)
