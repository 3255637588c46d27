"""Voice style store: per-speaker conditioning tensors from JSON assets.

Each voice file holds two named tensors:

    {"style_ttl": {"data": [...], "dims": [1, 50, 256], "type": "float32"},
     "style_dp":  {"data": [...], "dims": [1, 8, 16],   "type": "float32"}}
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from .types import VoiceInfo, VoiceStyle

log = logging.getLogger("voices")

DEFAULT_VOICE = "M3"


def _load_tensor(entry: dict, field: str, path: Path) -> np.ndarray:
    try:
        data = entry["data"]
        dims = entry["dims"]
    except (KeyError, TypeError) as e:
        raise ValueError(f"{path.name}: {field} must have 'data' and 'dims'") from e
    dtype = entry.get("type") or "float32"
    array = np.asarray(data, dtype=dtype).reshape(dims)
    # The synthesis sessions only take float32 conditioning.
    array = array.astype(np.float32, copy=False)
    array.setflags(write=False)
    return array


def load_voice_style(path: Path) -> VoiceStyle:
    """Read one voice file into an immutable VoiceStyle."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    for field in ("style_ttl", "style_dp"):
        if field not in raw:
            raise ValueError(f"{path.name}: missing {field}")
    return VoiceStyle(
        name=path.stem,
        style_ttl=_load_tensor(raw["style_ttl"], "style_ttl", path),
        style_dp=_load_tensor(raw["style_dp"], "style_dp", path),
    )


class VoiceStyleStore:
    """Loads voices on demand and caches them for the life of the store."""

    def __init__(self, directory: Path, default_voice: str = DEFAULT_VOICE):
        self.directory = Path(directory)
        self.default_voice = default_voice
        self._cache: Dict[str, VoiceStyle] = {}
        self._lock = threading.Lock()

    def available(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def list_voices(self) -> List[VoiceInfo]:
        return [
            VoiceInfo(id=name, name=name, description=f"Voice style {name}")
            for name in self.available()
        ]

    def get(self, voice_id: Optional[str] = None) -> VoiceStyle:
        """Return the voice, falling back to the default for unknown ids."""
        voice_id = voice_id or self.default_voice
        with self._lock:
            if voice_id in self._cache:
                return self._cache[voice_id]

            path = self.directory / f"{voice_id}.json"
            if not path.exists() and voice_id != self.default_voice:
                log.warning("Unknown voice %r, falling back to %s", voice_id, self.default_voice)
                voice_id = self.default_voice
                if voice_id in self._cache:
                    return self._cache[voice_id]
                path = self.directory / f"{voice_id}.json"
            if not path.exists():
                raise FileNotFoundError(f"Voice style not found: {path}")

            style = load_voice_style(path)
            log.info("Voice style loaded: %s (ttl %s, dp %s)",
                     voice_id, style.style_ttl.shape, style.style_dp.shape)
            self._cache[voice_id] = style
            return style

    def clear(self):
        with self._lock:
            self._cache.clear()
