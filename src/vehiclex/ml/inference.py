"""Inference execution layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference
                                           \\-> InferenceSession.run_async (fallback)

The semaphore is the in-flight guard (N defaults to 1). Requests beyond the
limit queue with a 5s timeout, then fail with ``InferenceBusyError``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

from vehiclex.errors import AsyncExecutionRequired, InferenceBusyError, InferenceError
from vehiclex.ml.classifier import first_scalar
from vehiclex.ml.decision import clamp01

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    import numpy as np
    from numpy.typing import NDArray

    from vehiclex.config import Settings
    from vehiclex.ml.buffers import BufferScope
    from vehiclex.ml.classifier import ModelOutput, VehicleModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the in-flight semaphore and the thread pool for blocking ML work."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        """Hold an inference slot for the duration of the block.

        Raises:
            InferenceBusyError: If no slot frees up within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            raise InferenceBusyError("Timed out waiting for an inference slot") from None
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            yield
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def run_in_thread(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking function in the inference thread pool (no slot taken)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)


class InferenceEngine:
    """Runs one batch through the model and returns the clamped heavy-vehicle probability."""

    def __init__(self, pool: InferencePool) -> None:
        self._pool = pool

    async def infer(self, model: VehicleModel, batch: NDArray[np.float32], scope: BufferScope) -> float:
        """Execute ``model`` on ``batch``: synchronous first, asynchronous on demand.

        Only ``AsyncExecutionRequired`` from the synchronous attempt triggers the
        asynchronous retry; any other failure is final.

        Raises:
            InferenceError: If execution failed or produced no usable probability.
            InferenceBusyError: If another prediction holds the in-flight guard.
        """
        async with self._pool.acquire():
            output = await self._execute(model, batch)

        tensors = [scope.track(t) for t in output.tensors]
        try:
            raw = first_scalar(output)
        finally:
            for tensor in tensors:
                scope.release(tensor)

        if math.isnan(raw):
            raise InferenceError("Model returned NaN")
        prob = clamp01(raw)
        if prob != raw:
            logger.warning("Clamped model output %.6f to %.6f", raw, prob)
        return prob

    async def _execute(self, model: VehicleModel, batch: NDArray[np.float32]) -> ModelOutput:
        try:
            return await self._pool.run_in_thread(model.execute, batch)
        except AsyncExecutionRequired as exc:
            logger.warning("Synchronous execution unsupported (%s); retrying asynchronously", exc)
        except InferenceError:
            raise
        except Exception as exc:
            logger.exception("Synchronous model execution failed")
            raise InferenceError(f"Model execution failed: {exc}") from exc

        try:
            return await model.execute_async(batch)
        except InferenceError:
            logger.exception("Asynchronous model execution failed")
            raise
        except Exception as exc:
            logger.exception("Asynchronous model execution failed")
            raise InferenceError(f"Asynchronous model execution failed: {exc}") from exc
