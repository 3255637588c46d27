"""Shared data types for the inference engine."""

from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class CapabilityKind(str, Enum):
    """The three capabilities that take turns on the accelerator."""
    TRANSCRIPTION = "stt"
    GENERATION = "chat"
    SYNTHESIS = "tts"


@dataclass(frozen=True)
class VoiceInfo:
    """Describes an available voice."""
    id: str
    name: str
    description: str


@dataclass
class AudioChunk:
    """A chunk of mono float32 PCM audio."""
    samples: np.ndarray     # float32, range [-1.0, 1.0]
    sample_rate: int = 44100

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


@dataclass
class TextEncoding:
    """Padded code matrix plus presence mask for a batch of strings."""
    text_ids: np.ndarray            # int64 [batch, max_len]
    text_mask: np.ndarray           # float32 [batch, 1, max_len]
    lengths: list
    unsupported_chars: list = field(default_factory=list)


@dataclass(frozen=True)
class VoiceStyle:
    """A speaker's conditioning pair. Treated as read-only once loaded."""
    name: str
    style_ttl: np.ndarray   # conditions text encoding and refinement
    style_dp: np.ndarray    # conditions duration prediction


@dataclass
class SynthesisResult:
    """Output of one synthesis call."""
    audio: AudioChunk
    duration: float
    diagnostics: list = field(default_factory=list)
