"""Speech synthesis engine: text + voice style to float32 PCM.

Pipeline per segment (all four graphs run through onnxruntime):

    text -> indexer -> duration_predictor -> text_encoder
         -> vector_estimator x total_step (in-place latent refinement)
         -> vocoder -> truncate to predicted length

Assets live in one directory:
    tts.json, unicode_indexer.json,
    duration_predictor.onnx, text_encoder.onnx,
    vector_estimator.onnx, vocoder.onnx
Voice styles live next to it in voice_styles/<voice>.json.
"""

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .capability import CapabilityHandle, ProgressCallback
from .errors import EmptyUtteranceError
from .runtime import RuntimeConfig, Session, load_sessions
from .text import UnicodeIndexer, length_to_mask, normalize_text
from .types import AudioChunk, CapabilityKind, SynthesisResult, VoiceStyle
from .voices import DEFAULT_VOICE, VoiceStyleStore

log = logging.getLogger("tts")

SESSION_NAMES = ("duration_predictor", "text_encoder", "vector_estimator", "vocoder")
DEFAULT_TOTAL_STEP = 10
MAX_SEGMENT_CHARS = 300

# Reasoning blocks some chat models emit; never spoken
_THINK_RE = re.compile(r"<think>.*?(</think>|$)", re.DOTALL)


@dataclass(frozen=True)
class SynthesisConfig:
    assets_dir: Path
    voice_styles_dir: Optional[Path] = None  # default: <assets_dir>/../voice_styles
    default_voice: str = DEFAULT_VOICE
    language: Optional[str] = "en"
    total_step: int = DEFAULT_TOTAL_STEP
    speed: float = 1.0              # duration factor: >1.0 slows speech down
    min_duration: float = 0.05      # seconds
    max_duration: float = 60.0      # seconds
    seed: Optional[int] = None
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @property
    def styles_dir(self) -> Path:
        if self.voice_styles_dir is not None:
            return Path(self.voice_styles_dir)
        return Path(self.assets_dir).parent / "voice_styles"


@dataclass(frozen=True)
class ModelShape:
    """The numbers from tts.json the engine needs to size its buffers."""
    sample_rate: int
    base_chunk_size: int
    chunk_compress_factor: int
    latent_dim: int

    @property
    def chunk_size(self) -> int:
        """Waveform samples covered by one latent frame."""
        return self.base_chunk_size * self.chunk_compress_factor

    @property
    def latent_channels(self) -> int:
        return self.latent_dim * self.chunk_compress_factor

    @classmethod
    def from_dict(cls, cfg: dict) -> "ModelShape":
        return cls(
            sample_rate=int(cfg["ae"]["sample_rate"]),
            base_chunk_size=int(cfg["ae"]["base_chunk_size"]),
            chunk_compress_factor=int(cfg["ttl"]["chunk_compress_factor"]),
            latent_dim=int(cfg["ttl"]["latent_dim"]),
        )

    @classmethod
    def from_file(cls, path: Path) -> "ModelShape":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


# ── Text segmentation ─────────────────────────────────────────

def sanitize_for_speech(text: str) -> str:
    """Drop <think>...</think> blocks (including an unterminated one)."""
    return _THINK_RE.sub("", text).strip()


def split_sentences(text: str, max_chars: int = MAX_SEGMENT_CHARS) -> List[str]:
    """Split text into sentences for incremental synthesis.

    Sentences longer than max_chars are broken at commas, then spaces.
    """
    parts = re.split(r"(?<=[.!?])\s+", text.strip())
    segments = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        while len(part) > max_chars:
            cut = part.rfind(", ", 0, max_chars)
            if cut <= 0:
                cut = part.rfind(" ", 0, max_chars)
            if cut <= 0:
                cut = max_chars
            segments.append(part[:cut + 1].strip())
            part = part[cut + 1:].strip()
        if part:
            segments.append(part)
    return segments


# ── Latent noise ──────────────────────────────────────────────

def standard_normal(rng: np.random.Generator, shape) -> np.ndarray:
    """Box-Muller: two uniform draws per element -> N(0, 1), float32."""
    u1 = 1.0 - rng.random(shape)  # (0, 1], keeps log() finite
    u2 = rng.random(shape)
    return (np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)).astype(np.float32)


def latent_lengths(wav_lengths: Sequence[int], chunk_size: int) -> List[int]:
    return [(int(n) + chunk_size - 1) // chunk_size for n in wav_lengths]


def sample_noisy_latent(wav_lengths: Sequence[int], shape: ModelShape, rng: np.random.Generator):
    """Noise-initialised latent buffer plus its mask.

    Positions at or beyond each row's true latent length are zero.
    Returns (latent [B, C, T], latent_mask [B, 1, T]).
    """
    lengths = latent_lengths(wav_lengths, shape.chunk_size)
    latent_len = max(1, math.ceil(max(wav_lengths) / shape.chunk_size))
    latent = standard_normal(rng, (len(wav_lengths), shape.latent_channels, latent_len))
    latent_mask = length_to_mask(lengths, latent_len)
    latent *= latent_mask
    return latent, latent_mask


def _batch(style: np.ndarray, bsz: int) -> np.ndarray:
    if style.shape[0] == bsz:
        return style
    if style.shape[0] != 1:
        raise ValueError(f"Voice style batch {style.shape[0]} does not match {bsz} texts")
    return np.repeat(style, bsz, axis=0)


# ── Engine ────────────────────────────────────────────────────

class SynthesisEngine(CapabilityHandle):
    """The synthesis capability: four sessions, indexer and voice styles."""

    kind = CapabilityKind.SYNTHESIS

    def __init__(
        self,
        sessions: Dict[str, Session],
        shape: ModelShape,
        indexer: UnicodeIndexer,
        voices: VoiceStyleStore,
        config: SynthesisConfig,
    ):
        super().__init__()
        missing = [n for n in SESSION_NAMES if n not in sessions]
        if missing:
            raise ValueError(f"Missing synthesis sessions: {', '.join(missing)}")
        self.sessions = sessions
        self.shape = shape
        self.indexer = indexer
        self.voices = voices
        self.config = config
        self.rng = np.random.default_rng(config.seed)

    @property
    def sample_rate(self) -> int:
        return self.shape.sample_rate

    def synthesize(
        self,
        text: str,
        voice: Optional[str] = None,
        speed: Optional[float] = None,
        total_step: Optional[int] = None,
        lang: Optional[str] = None,
    ) -> SynthesisResult:
        """Synthesize one finalized string as a single chunk."""
        return self.synthesize_batch([text], voice, speed, total_step, lang)[0]

    def synthesize_batch(
        self,
        texts: Sequence[str],
        voice: Optional[str] = None,
        speed: Optional[float] = None,
        total_step: Optional[int] = None,
        lang: Optional[str] = None,
    ) -> List[SynthesisResult]:
        """Synthesize several strings in one pass with a shared voice."""
        if self.closed:
            raise RuntimeError("Synthesis engine has been disposed")
        if not texts:
            return []
        style = self.voices.get(voice)
        return self._infer(
            list(texts),
            style,
            self.config.speed if speed is None else float(speed),
            self.config.total_step if total_step is None else int(total_step),
            self.config.language if lang is None else lang,
        )

    def stream(
        self,
        text: str,
        voice: Optional[str] = None,
        on_chunk: Optional[Callable[[AudioChunk], None]] = None,
        speed: Optional[float] = None,
        total_step: Optional[int] = None,
        lang: Optional[str] = None,
    ) -> List[SynthesisResult]:
        """Synthesize text sentence by sentence, emitting each chunk in order.

        Raises EmptyUtteranceError if the whole text has nothing to say.
        Individual segments that normalize to nothing are skipped.
        """
        text = sanitize_for_speech(text)
        if not normalize_text(text):
            raise EmptyUtteranceError(text)

        segments = split_sentences(text)
        log.info("TTS: %d segment(s) to synthesize", len(segments))
        results = []
        for i, segment in enumerate(segments):
            try:
                result = self.synthesize(segment, voice, speed, total_step, lang)
            except EmptyUtteranceError:
                log.warning("Skipping unspeakable segment %d: %r", i + 1, segment[:60])
                continue
            results.append(result)
            if on_chunk:
                on_chunk(result.audio)
            log.info("TTS segment %d/%d: %.2fs audio, %r",
                     i + 1, len(segments), result.duration, segment[:60])
        return results

    # ── stages ────────────────────────────────────────────────

    def _infer(
        self,
        texts: List[str],
        style: VoiceStyle,
        speed: float,
        total_step: int,
        lang: Optional[str],
    ) -> List[SynthesisResult]:
        started = time.perf_counter()
        bsz = len(texts)
        diagnostics: List[str] = []

        # 1. indexing
        enc = self.indexer.encode(texts, lang)
        if enc.unsupported_chars:
            diagnostics.append("unsupported characters: " + "".join(enc.unsupported_chars))
        style_ttl = _batch(style.style_ttl, bsz)
        style_dp = _batch(style.style_dp, bsz)

        # 2. duration
        dp_out = self.sessions["duration_predictor"].run({
            "text_ids": enc.text_ids,
            "style_dp": style_dp,
            "text_mask": enc.text_mask,
        })
        raw = np.asarray(dp_out["duration"], dtype=np.float64).reshape(bsz, -1)[:, 0]
        durations = raw * speed
        clipped = np.clip(durations, self.config.min_duration, self.config.max_duration)
        if np.any(clipped != durations):
            diagnostics.append(
                "duration clipped to [%.2f, %.2f]s" % (self.config.min_duration, self.config.max_duration)
            )
            log.warning("Predicted duration %s clipped to %s", durations.tolist(), clipped.tolist())
        durations = clipped
        sr = self.shape.sample_rate
        wav_lengths = [int(round(d * sr)) for d in durations]

        # 3. text encoding
        text_emb = self.sessions["text_encoder"].run({
            "text_ids": enc.text_ids,
            "style_ttl": style_ttl,
            "text_mask": enc.text_mask,
        })["text_emb"]

        # 4. iterative refinement
        latent, latent_mask = sample_noisy_latent(wav_lengths, self.shape, self.rng)
        total = np.full(bsz, total_step, dtype=np.float32)
        estimator = self.sessions["vector_estimator"]
        for step in range(total_step):
            out = estimator.run({
                "noisy_latent": latent,
                "text_emb": text_emb,
                "style_ttl": style_ttl,
                "text_mask": enc.text_mask,
                "latent_mask": latent_mask,
                "total_step": total,
                "current_step": np.full(bsz, step, dtype=np.float32),
            })
            np.copyto(latent, np.asarray(out["denoised_latent"], dtype=np.float32).reshape(latent.shape))

        # 5. vocoder
        wav = self.sessions["vocoder"].run({"latent": latent})["wav_tts"]
        wav = np.asarray(wav, dtype=np.float32).reshape(bsz, -1)

        elapsed = time.perf_counter() - started
        log.debug("TTS batch=%d steps=%d latent=%s in %.3fs",
                  bsz, total_step, latent.shape, elapsed)

        return [
            SynthesisResult(
                audio=AudioChunk(samples=wav[i, :wav_lengths[i]].copy(), sample_rate=sr),
                duration=float(durations[i]),
                diagnostics=list(diagnostics),
            )
            for i in range(bsz)
        ]

    def _release(self) -> None:
        first_error = None
        for name, session in self.sessions.items():
            try:
                session.release()
            except Exception as e:
                log.warning("Failed to release %s session: %s", name, e)
                first_error = first_error or e
        self.voices.clear()
        log.info("Synthesis sessions released")
        if first_error is not None:
            raise first_error


def create(config: SynthesisConfig, progress: ProgressCallback = None) -> SynthesisEngine:
    """Load configs, indexer and all four sessions."""
    assets = Path(config.assets_dir)
    log.info("Loading synthesis assets from %s", assets)
    shape = ModelShape.from_file(assets / "tts.json")
    indexer = UnicodeIndexer.from_file(assets / "unicode_indexer.json")
    sessions = load_sessions(assets, SESSION_NAMES, config.runtime, on_progress=progress)
    voices = VoiceStyleStore(config.styles_dir, default_voice=config.default_voice)
    log.info("Synthesis ready: %d Hz, chunk %d, %d voice(s)",
             shape.sample_rate, shape.chunk_size, len(voices.available()))
    return SynthesisEngine(sessions, shape, indexer, voices, config)
