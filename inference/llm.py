"""Generation capability: a local Ollama model, streamed over httpx.

Loading the capability means making Ollama hold the model in memory;
disposing it means asking Ollama to unload it (keep_alive=0), which is
what frees the accelerator for the next capability.
"""

import json
import logging
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import httpx

from .capability import CapabilityHandle, ProgressCallback
from .types import CapabilityKind

log = logging.getLogger("llm")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful voice assistant. Keep responses concise, "
    "one to three sentences. Speak naturally as in a conversation."
)

_THINK_OPEN = "<think>"
_THINK_CLOSE = "</think>"


@dataclass(frozen=True)
class GenerationConfig:
    url: str = "http://localhost:11434"
    model: str = "qwen3:0.6b"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    timeout: float = 60.0
    keep_alive: str = "30m"
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_k: int = 20
    enable_thinking: bool = False
    pull_missing: bool = True


def normalize_conversation(conversation: Union[str, list], system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> list[dict]:
    """Return turns that always start with a system turn.

    A bare string becomes [system, user]. An existing system turn is moved
    to the front; otherwise the default prompt is prepended.
    """
    if isinstance(conversation, str):
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": conversation},
        ]
    turns = [{"role": m["role"], "content": m.get("content", "")} for m in conversation]
    if turns and turns[0]["role"] == "system":
        return turns
    for i, turn in enumerate(turns):
        if turn["role"] == "system":
            return [turn] + turns[:i] + turns[i + 1:]
    return [{"role": "system", "content": system_prompt}] + turns


def _partial_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of tag."""
    for k in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:k]):
            return k
    return 0


class ThinkFilter:
    """Strips <think>...</think> from a fragment stream.

    Tags may be split across fragments, so a short tail is held back
    until the next fragment disambiguates it.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self._buf = ""
        self._inside = False
        self._started = False

    def feed(self, fragment: str) -> str:
        self._buf += fragment
        out = []
        while self._buf:
            if self._inside:
                idx = self._buf.find(_THINK_CLOSE)
                if idx < 0:
                    self._buf = self._buf[-(len(_THINK_CLOSE) - 1):]
                    break
                self._buf = self._buf[idx + len(_THINK_CLOSE):]
                self._inside = False
            else:
                idx = self._buf.find(_THINK_OPEN)
                if idx >= 0:
                    out.append(self._buf[:idx])
                    self._buf = self._buf[idx + len(_THINK_OPEN):]
                    self._inside = True
                    continue
                keep = _partial_suffix(self._buf, _THINK_OPEN)
                out.append(self._buf[:len(self._buf) - keep])
                self._buf = self._buf[len(self._buf) - keep:]
                break
        return self._visible("".join(out))

    def flush(self) -> str:
        tail = "" if self._inside else self._buf
        self._buf = ""
        return self._visible(tail)

    def _visible(self, text: str) -> str:
        # Drop the whitespace a reasoning block leaves before the answer
        if not self._started:
            text = text.lstrip()
            if text:
                self._started = True
        return text


def _check(resp: httpx.Response) -> dict:
    """Raise with Ollama's own error message so callers can classify it."""
    try:
        data = resp.json()
    except json.JSONDecodeError:
        data = {}
    if resp.status_code >= 400 or "error" in data:
        raise RuntimeError(f"Ollama error ({resp.status_code}): {data.get('error', resp.text)}")
    return data


class GenerationHandle(CapabilityHandle):
    """A model held resident by the Ollama server."""

    kind = CapabilityKind.GENERATION

    def __init__(
        self,
        config: GenerationConfig,
        stop: Optional[threading.Event] = None,
        transport=None,  # httpx.MockTransport in tests
    ):
        super().__init__()
        self.config = config
        self.stop = stop or threading.Event()
        self._transport = transport
        self._filter = ThinkFilter()

    def interrupt(self):
        self.stop.set()

    def reset(self):
        """Clear the cancel flag and any half-parsed stream state."""
        self.stop.clear()
        self._filter.reset()

    async def stream(
        self,
        conversation: Union[str, list],
        stop: Optional[threading.Event] = None,
    ) -> AsyncIterator[str]:
        """Yield reply fragments in order until done or interrupted.

        stop overrides the handle's own cancel flag for this call.
        """
        if self.closed:
            raise RuntimeError("Generation model has been released")
        if stop is not None:
            self.stop = stop
        self.reset()
        messages = normalize_conversation(conversation, self.config.system_prompt)
        body = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
            "keep_alive": self.config.keep_alive,
            "options": {
                "num_predict": self.config.max_new_tokens,
                "temperature": self.config.temperature,
                "top_k": self.config.top_k,
            },
        }
        if not self.config.enable_thinking:
            body["think"] = False

        log.debug("Ollama chat: model=%s, %d messages", self.config.model, len(messages))
        async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
            async with client.stream("POST", f"{self.config.url}/api/chat", json=body) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    _check(resp)
                async for line in resp.aiter_lines():
                    if self.stop.is_set():
                        log.info("Generation interrupted")
                        break
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if "error" in data:
                        raise RuntimeError(f"Ollama error: {data['error']}")
                    visible = self._filter.feed(data.get("message", {}).get("content", ""))
                    if visible:
                        yield visible
                    if data.get("done"):
                        break
        tail = self._filter.flush()
        if tail and not self.stop.is_set():
            yield tail

    def _release(self) -> None:
        with httpx.Client(timeout=self.config.timeout, transport=self._transport) as client:
            resp = client.post(
                f"{self.config.url}/api/generate",
                json={"model": self.config.model, "keep_alive": 0},
            )
            _check(resp)
        log.info("Ollama model unloaded: %s", self.config.model)


# ── Setup ─────────────────────────────────────────────────────

def installed_models(client: httpx.Client, url: str) -> set:
    """Names Ollama reports, with and without the ':latest' suffix."""
    try:
        resp = client.get(f"{url}/api/tags")
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise ConnectionError(
            f"Cannot reach Ollama at {url}. Is Ollama running? Start it with: ollama serve"
        ) from e
    names = set()
    for m in resp.json().get("models", []):
        names.add(m["name"])
        if m["name"].endswith(":latest"):
            names.add(m["name"][:-7])
    return names


def pull_model(client: httpx.Client, config: GenerationConfig, progress: ProgressCallback = None):
    """Stream-pull a model, forwarding per-layer download progress."""
    log.info("Pulling Ollama model %s...", config.model)
    with client.stream(
        "POST",
        f"{config.url}/api/pull",
        json={"name": config.model, "stream": True},
        timeout=None,
    ) as resp:
        resp.raise_for_status()
        for line in resp.iter_lines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if "error" in data:
                raise RuntimeError(f"Ollama pull failed: {data['error']}")
            total = data.get("total")
            if progress and total:
                progress(data.get("digest") or data.get("status", config.model),
                         data.get("completed", 0) / total * 100.0)


def create(
    config: GenerationConfig,
    progress: ProgressCallback = None,
    stop: Optional[threading.Event] = None,
    transport=None,
) -> GenerationHandle:
    """Make sure the model is installed, then have Ollama load it."""
    with httpx.Client(timeout=config.timeout, transport=transport) as client:
        if config.model not in installed_models(client, config.url):
            if not config.pull_missing:
                raise LookupError(f"Ollama model {config.model!r} is not installed")
            pull_model(client, config, progress)

        if progress:
            progress(config.model, 100.0)
        # A generate call with no prompt just loads the model
        _check(client.post(
            f"{config.url}/api/generate",
            json={"model": config.model, "keep_alive": config.keep_alive},
        ))
    log.info("Ollama model loaded: %s", config.model)
    return GenerationHandle(config, stop=stop, transport=transport)
