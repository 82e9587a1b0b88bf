"""Heavy/light vehicle classifier: model protocol, ONNX adapter and output union."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime.capi.onnxruntime_pybind11_state import EPFail
from onnxruntime.capi.onnxruntime_pybind11_state import NotImplemented as OrtNotImplemented

from vehiclex.errors import AsyncExecutionRequired, InferenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SingleOutput:
    """A model that produced exactly one output tensor."""

    tensor: NDArray[np.generic]

    @property
    def tensors(self) -> tuple[NDArray[np.generic], ...]:
        return (self.tensor,)


@dataclass(frozen=True)
class MultipleOutput:
    """A model that produced several output tensors, in graph order."""

    tensors: tuple[NDArray[np.generic], ...]


ModelOutput = SingleOutput | MultipleOutput


def as_model_output(raw: NDArray[np.generic] | Sequence[NDArray[np.generic]]) -> ModelOutput:
    """Wrap a raw runtime result (one array or a list of arrays)."""
    if isinstance(raw, np.ndarray):
        return SingleOutput(raw)
    tensors = tuple(np.asarray(t) for t in raw)
    if not tensors:
        raise InferenceError("Model returned no outputs")
    if len(tensors) == 1:
        return SingleOutput(tensors[0])
    return MultipleOutput(tensors)


def first_scalar(output: ModelOutput) -> float:
    """Read the first element of the first tensor, whatever the output shape."""
    first = output.tensor if isinstance(output, SingleOutput) else output.tensors[0]
    flat = np.ravel(first)
    if flat.size == 0:
        raise InferenceError("Model returned an empty output tensor")
    return float(flat[0])


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class VehicleModel(Protocol):
    """A black-box function from a normalized image batch to a heavy-vehicle probability."""

    def execute(self, batch: NDArray[np.float32]) -> ModelOutput:
        """Run the graph synchronously.

        Raises:
            AsyncExecutionRequired: If the graph can only be run through ``execute_async``.
        """
        ...

    async def execute_async(self, batch: NDArray[np.float32]) -> ModelOutput:
        """Run the graph asynchronously."""
        ...


# ---------------------------------------------------------------------------
# ONNX Runtime implementation
# ---------------------------------------------------------------------------

# Graph needs an operator or provider the synchronous call could not run.
# The asynchronous retry may fail the same way; the engine then reports InferenceError.
_ASYNC_ONLY_ERRORS: tuple[type[Exception], ...] = (OrtNotImplemented, EPFail)


class OnnxVehicleModel:
    """Adapts an ONNX Runtime session to ``VehicleModel``. The session is never mutated."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        self._input_name: str = session.get_inputs()[0].name

    @property
    def input_name(self) -> str:
        return self._input_name

    def execute(self, batch: NDArray[np.float32]) -> ModelOutput:
        try:
            raw = self._session.run(None, {self._input_name: batch})
        except _ASYNC_ONLY_ERRORS as exc:
            raise AsyncExecutionRequired(str(exc)) from exc
        return as_model_output(raw)

    async def execute_async(self, batch: NDArray[np.float32]) -> ModelOutput:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[list[NDArray[np.generic]]] = loop.create_future()

        def _resolve(results: list[NDArray[np.generic]], error: str) -> None:
            if future.done():
                return
            if error:
                future.set_exception(InferenceError(f"Asynchronous execution failed: {error}"))
            else:
                future.set_result(results)

        def _on_done(results: list[NDArray[np.generic]], _user_data: object, error: str) -> None:
            # Invoked on an ONNX Runtime intra-op thread.
            loop.call_soon_threadsafe(_resolve, results, error)

        self._session.run_async(None, {self._input_name: batch}, _on_done, None)
        return as_model_output(await future)
