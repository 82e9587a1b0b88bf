"""Scoped ownership of intermediate numeric buffers.

Every array produced while turning an image into a probability (raw pixels,
resized, normalized, batched input, model outputs) is registered with the
``BufferScope`` of the prediction that created it. Leaving the scope releases
whatever is still held, on success and on error alike. A process-wide counter
of live buffers makes leaks observable.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray

A = TypeVar("A", bound="NDArray[np.generic]")

_live_lock = threading.Lock()
_live_buffers: int = 0


def live_buffer_count() -> int:
    """Return the number of tracked buffers not yet released, across all scopes."""
    with _live_lock:
        return _live_buffers


def _adjust_live(delta: int) -> None:
    global _live_buffers  # noqa: PLW0603
    with _live_lock:
        _live_buffers += delta


class BufferScope:
    """Owns the buffers of one prediction and releases each exactly once."""

    def __init__(self, name: str = "prediction") -> None:
        self.name = name
        self._held: dict[int, NDArray[np.generic]] = {}
        self._closed = False

    def __enter__(self) -> BufferScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def track(self, array: A) -> A:
        """Register ``array`` with this scope and return it unchanged."""
        if self._closed:
            raise RuntimeError(f"Buffer scope '{self.name}' is already closed")
        key = id(array)
        if key not in self._held:
            self._held[key] = array
            _adjust_live(1)
        return array

    def release(self, array: NDArray[np.generic]) -> None:
        """Drop the scope's reference to ``array``. Releasing twice is a no-op."""
        if self._held.pop(id(array), None) is not None:
            _adjust_live(-1)

    @property
    def held_count(self) -> int:
        return len(self._held)

    def close(self) -> None:
        """Release everything still held."""
        released = len(self._held)
        self._held.clear()
        if released:
            _adjust_live(-released)
        self._closed = True
