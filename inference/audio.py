"""PCM helpers: float32 <-> int16, WAV files and base64 transport."""

import base64
import wave
from pathlib import Path
from typing import Iterable, Tuple, Union

import numpy as np

from .types import AudioChunk


def to_pcm16(samples: np.ndarray) -> bytes:
    """float32 in [-1, 1] to little-endian int16 bytes (clamped)."""
    samples = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (samples * 32767.0).astype("<i2").tobytes()


def from_pcm16(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def concat(chunks: Iterable[AudioChunk]) -> AudioChunk:
    """Join chunks that share a sample rate."""
    chunks = list(chunks)
    if not chunks:
        return AudioChunk(samples=np.zeros(0, dtype=np.float32))
    rates = {c.sample_rate for c in chunks}
    if len(rates) > 1:
        raise ValueError(f"Cannot join chunks with different sample rates: {sorted(rates)}")
    return AudioChunk(
        samples=np.concatenate([c.samples for c in chunks]).astype(np.float32),
        sample_rate=chunks[0].sample_rate,
    )


def write_wav(path: Union[str, Path], chunk: AudioChunk) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(chunk.sample_rate)
        wf.writeframes(to_pcm16(chunk.samples))
    return path


def read_wav(path: Union[str, Path]) -> Tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV as mono float32. Stereo is averaged down."""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"{path}: only 16-bit PCM WAV is supported")
        channels = wf.getnchannels()
        rate = wf.getframerate()
        samples = from_pcm16(wf.readframes(wf.getnframes()))
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples.astype(np.float32), rate


# Gateway transport: base64 of little-endian float32

def encode_samples(samples: np.ndarray) -> str:
    return base64.b64encode(np.asarray(samples, dtype="<f4").tobytes()).decode("ascii")


def decode_samples(data: str) -> np.ndarray:
    raw = base64.b64decode(data)
    if len(raw) % 4:
        raise ValueError("Audio payload is not a whole number of float32 samples")
    return np.frombuffer(raw, dtype="<f4").astype(np.float32)
