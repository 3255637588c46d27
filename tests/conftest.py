"""Shared fakes: no model assets, no Ollama, no Whisper."""

import json
import threading

import numpy as np
import pytest

from inference.capability import CapabilityHandle
from inference.errors import NoSpeechError
from inference.text import UnicodeIndexer
from inference.tts import ModelShape, SynthesisConfig, SynthesisEngine
from inference.types import AudioChunk, CapabilityKind, SynthesisResult
from inference.voices import VoiceStyleStore

# Tiny model: 8 samples per latent frame, 6 latent channels
SHAPE = ModelShape(sample_rate=1000, base_chunk_size=4, chunk_compress_factor=2, latent_dim=3)


class FakeSession:
    """Stands in for runtime.Session. fn(inputs) -> dict of outputs."""

    def __init__(self, name, fn, calls=None):
        self.name = name
        self.fn = fn
        self.calls = calls if calls is not None else []
        self.released = False
        self.fail_release = False

    def run(self, inputs):
        if self.released:
            raise RuntimeError(f"{self.name} released")
        self.calls.append((self.name, {k: np.array(v, copy=True) for k, v in inputs.items()}))
        return self.fn(inputs)

    def release(self):
        self.released = True
        if self.fail_release:
            raise RuntimeError(f"{self.name} release failed")


def make_sessions(duration=0.5, calls=None):
    """Four fake graphs with the real input/output names.

    The estimator adds 1.0 inside the mask, so after N steps every live
    latent position holds noise + N. The vocoder emits one sample per
    waveform position of the latent frame grid.
    """
    calls = calls if calls is not None else []
    durations = np.atleast_1d(np.asarray(duration, dtype=np.float32))

    def dp(inputs):
        bsz = inputs["text_ids"].shape[0]
        return {"duration": np.resize(durations, bsz).astype(np.float32)}

    def te(inputs):
        bsz, length = inputs["text_ids"].shape
        return {"text_emb": np.ones((bsz, 4, length), dtype=np.float32)}

    def ve(inputs):
        return {"denoised_latent": inputs["noisy_latent"] + inputs["latent_mask"]}

    def voc(inputs):
        latent = inputs["latent"]
        bsz, _, frames = latent.shape
        wav = np.repeat(latent[:, 0, :], SHAPE.chunk_size, axis=1) * 0.01
        return {"wav_tts": wav.reshape(bsz, frames * SHAPE.chunk_size).astype(np.float32)}

    return {
        "duration_predictor": FakeSession("duration_predictor", dp, calls),
        "text_encoder": FakeSession("text_encoder", te, calls),
        "vector_estimator": FakeSession("vector_estimator", ve, calls),
        "vocoder": FakeSession("vocoder", voc, calls),
    }


def write_voice(directory, name, ttl_dims=(1, 2, 3), dp_dims=(1, 2, 2)):
    directory.mkdir(parents=True, exist_ok=True)
    ttl = np.arange(np.prod(ttl_dims), dtype=np.float32).reshape(ttl_dims)
    dp = np.full(dp_dims, 0.5, dtype=np.float32)
    payload = {
        "style_ttl": {"data": ttl.tolist(), "dims": list(ttl_dims), "type": "float32"},
        "style_dp": {"data": dp.tolist(), "dims": list(dp_dims), "type": "float32"},
    }
    path = directory / f"{name}.json"
    path.write_text(json.dumps(payload))
    return path


@pytest.fixture
def ascii_indexer():
    # Printable ASCII maps to itself; everything else is unsupported
    return UnicodeIndexer([cp if 32 <= cp < 127 else -1 for cp in range(128)])


@pytest.fixture
def voices_dir(tmp_path):
    styles = tmp_path / "voice_styles"
    write_voice(styles, "M3")
    write_voice(styles, "F1")
    return styles


@pytest.fixture
def engine_factory(tmp_path, voices_dir, ascii_indexer):
    def factory(duration=0.5, calls=None, **config):
        config.setdefault("seed", 1234)
        cfg = SynthesisConfig(assets_dir=tmp_path / "onnx", voice_styles_dir=voices_dir, **config)
        return SynthesisEngine(
            make_sessions(duration, calls),
            SHAPE,
            ascii_indexer,
            VoiceStyleStore(voices_dir, default_voice=cfg.default_voice),
            cfg,
        )
    return factory


# ── capability handles for arbiter/orchestrator tests ─────────

class FakeHandle(CapabilityHandle):
    def __init__(self, kind, log=None, fail_dispose=False):
        super().__init__()
        self.kind = kind
        self.log = log if log is not None else []
        self.fail_dispose = fail_dispose

    def _release(self):
        self.log.append(("dispose", self.kind))
        if self.fail_dispose:
            raise RuntimeError("driver refused to free buffers")


class FakeTranscriber(FakeHandle):
    def __init__(self, text="hello there", log=None):
        super().__init__(CapabilityKind.TRANSCRIPTION, log)
        self.text = text
        self.gate = None  # threading.Event to hold transcription open
        self.last_chunks = []

    def transcribe(self, audio, language=None, sample_rate=16000, on_partial=None):
        if self.gate is not None:
            self.gate.wait(5)
        if self.closed:
            raise RuntimeError("transcriber released")
        words = self.text.split()
        for i in range(1, len(words) + 1):
            if on_partial:
                on_partial(" ".join(words[:i]))
        if not self.text.strip() or self.text.startswith("("):
            raise NoSpeechError(self.text)
        self.last_chunks = [{"text": self.text, "timestamp": [0.0, 1.0]}]
        return self.text


class FakeGenerator(FakeHandle):
    def __init__(self, fragments=("Hi", " there", "."), log=None):
        super().__init__(CapabilityKind.GENERATION, log)
        self.fragments = list(fragments)
        self.seen = []
        self.stop = threading.Event()

    def reset(self):
        self.stop.clear()

    async def stream(self, conversation, stop=None):
        if stop is not None:
            self.stop = stop
        self.stop.clear()
        self.seen.append(conversation)
        for fragment in self.fragments:
            if self.stop.is_set():
                break
            yield fragment


class FakeSynth(FakeHandle):
    def __init__(self, log=None, fail=None):
        super().__init__(CapabilityKind.SYNTHESIS, log)
        self.fail = fail
        self.spoken = []

    def stream(self, text, voice=None, on_chunk=None):
        if self.fail is not None:
            raise self.fail
        self.spoken.append((text, voice))
        chunk = AudioChunk(samples=np.zeros(100, dtype=np.float32), sample_rate=1000)
        if on_chunk:
            on_chunk(chunk)
        return [SynthesisResult(audio=chunk, duration=0.1)]
