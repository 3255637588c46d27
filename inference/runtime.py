"""onnxruntime façade: load a graph, run it on named arrays, release it.

All engine flags live in RuntimeConfig and are applied per session, so
loading a model never mutates process-wide runtime state.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

log = logging.getLogger("runtime")

# Preferred accelerators, best first. CPU is always appended as fallback.
PROVIDER_PREFERENCE = (
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
)

_GRAPH_OPT = {
    "disable": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}


@dataclass(frozen=True)
class RuntimeConfig:
    """Session options, passed once at startup."""
    providers: Optional[Tuple[str, ...]] = None  # None = auto-detect
    graph_optimization: str = "all"
    sequential: bool = True
    intra_op_threads: int = 0                    # 0 = runtime default
    log_severity: int = 3                        # errors only


def resolve_providers(requested: Optional[Sequence[str]] = None) -> list[str]:
    """Pick execution providers that this onnxruntime build actually has."""
    available = set(ort.get_available_providers())
    if requested:
        chosen = [p for p in requested if p in available]
        missing = [p for p in requested if p not in available]
        if missing:
            log.warning("Execution providers not available, skipping: %s", ", ".join(missing))
    else:
        chosen = [p for p in PROVIDER_PREFERENCE if p in available]
    if "CPUExecutionProvider" not in chosen:
        chosen.append("CPUExecutionProvider")
    return chosen


def session_options(config: RuntimeConfig) -> ort.SessionOptions:
    opts = ort.SessionOptions()
    opts.graph_optimization_level = _GRAPH_OPT.get(config.graph_optimization, _GRAPH_OPT["all"])
    opts.execution_mode = (
        ort.ExecutionMode.ORT_SEQUENTIAL if config.sequential else ort.ExecutionMode.ORT_PARALLEL
    )
    opts.log_severity_level = config.log_severity
    if config.intra_op_threads > 0:
        opts.intra_op_num_threads = config.intra_op_threads
    return opts


class Session:
    """One loaded graph. run() maps input names to arrays and back."""

    def __init__(self, name: str, inner: ort.InferenceSession):
        self.name = name
        self._inner = inner
        self.output_names = [o.name for o in inner.get_outputs()]

    @property
    def released(self) -> bool:
        return self._inner is None

    def run(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        if self._inner is None:
            raise RuntimeError(f"Session {self.name!r} has been released")
        outputs = self._inner.run(self.output_names, inputs)
        return dict(zip(self.output_names, outputs))

    def release(self):
        """Drop the native session so its buffers are freed."""
        self._inner = None


def load_session(path: Path, config: RuntimeConfig) -> Session:
    """Load a serialized graph from disk."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"ONNX model not found: {path}")
    providers = resolve_providers(config.providers)
    inner = ort.InferenceSession(str(path), session_options(config), providers=providers)
    log.info("Loaded %s (providers: %s)", path.name, ", ".join(inner.get_providers()))
    return Session(path.stem, inner)


def load_sessions(
    directory: Path,
    names: Sequence[str],
    config: RuntimeConfig,
    on_progress: Optional[Callable[[str, float], None]] = None,
) -> Dict[str, Session]:
    """Load several graphs from one directory, reporting progress per file.

    Sessions already loaded are released if a later one fails, so a
    partial load never leaves buffers behind.
    """
    sessions: Dict[str, Session] = {}
    try:
        for i, name in enumerate(names, start=1):
            sessions[name] = load_session(Path(directory) / f"{name}.onnx", config)
            if on_progress:
                on_progress(name, i / len(names) * 100.0)
    except Exception:
        for session in sessions.values():
            session.release()
        raise
    return sessions
