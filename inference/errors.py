"""Error taxonomy shared by the arbiter, capabilities and orchestrator."""

import re

# Allocation failure signatures from onnxruntime, CTranslate2, CUDA and Ollama
_OOM_RE = re.compile(
    r"out of memory|outofmemory|failed to allocate|bad_alloc|allocation"
    r"|requires more system memory|insufficient memory",
    re.IGNORECASE,
)

UNCLASSIFIED = "unclassified"


class PipelineError(Exception):
    """Base class for errors the pipeline reports with a distinct kind."""

    kind = UNCLASSIFIED


class ResourceExhaustedError(PipelineError):
    kind = "resource_exhausted"

    def __init__(self, message: str = ""):
        super().__init__(
            message
            or "Out of memory: failed to allocate model buffers. "
               "Close other applications using the accelerator and try again."
        )


class NoSpeechError(PipelineError):
    kind = "no_speech"

    def __init__(self, text: str = ""):
        super().__init__("No meaningful speech detected.")
        self.text = text


class EmptyUtteranceError(PipelineError):
    kind = "empty_utterance"

    def __init__(self, text: str = ""):
        super().__init__("Empty utterance after normalization.")
        self.text = text


def is_out_of_memory(exc: BaseException) -> bool:
    """True if the exception looks like an allocation failure."""
    if isinstance(exc, MemoryError):
        return True
    return bool(_OOM_RE.search(f"{type(exc).__name__}: {exc}"))


def error_kind(exc: BaseException) -> str:
    """Event kind for an exception: its own kind, or 'unclassified'."""
    return getattr(exc, "kind", UNCLASSIFIED) if isinstance(exc, PipelineError) else UNCLASSIFIED
