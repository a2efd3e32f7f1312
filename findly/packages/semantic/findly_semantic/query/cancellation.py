import threading
import time
from typing import Optional

from findly.packages.semantic.findly_semantic.errors import CompilationCancelled


class CancellationToken:
    """Cooperative cancellation signal checked between pipeline stages."""

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self, stage: str) -> None:
        if self.cancelled:
            raise CompilationCancelled(f"Compilation cancelled before {stage}.", [stage])
