"""The contract every capability handle honours.

The arbiter only ever sees this interface: a kind, a closed flag and
dispose(). What a handle owns beyond that is its own business.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from .types import CapabilityKind

# progress(file, percent)
ProgressCallback = Optional[Callable[[str, float], None]]


class CapabilityHandle(ABC):
    """Owns all runtime sessions and auxiliary state for one capability."""

    kind: CapabilityKind

    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def dispose(self) -> None:
        """Release every owned session. Idempotent.

        All sessions are released even if one fails; the first failure is
        re-raised afterwards.
        """
        if self._closed:
            return
        self._closed = True
        self._release()

    @abstractmethod
    def _release(self) -> None:
        """Free the capability's sessions and state."""
