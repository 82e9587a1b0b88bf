"""Error taxonomy for the classification pipeline."""

from __future__ import annotations


class VehicleXError(Exception):
    """Base class for pipeline errors that carry a user-facing status line."""

    status_message: str = "Unexpected error"


class ModelLoadError(VehicleXError):
    """The model artifact could not be resolved or loaded. Terminal for the process."""

    status_message = "Model failed to load"


class ModelNotReadyError(VehicleXError):
    """A model session was requested before loading finished successfully."""

    status_message = "Model is not ready"


class DecodeError(VehicleXError):
    """The uploaded image could not be decoded or has degenerate dimensions."""

    status_message = "Could not decode image"


class InferenceError(VehicleXError):
    """Both synchronous and asynchronous model execution failed."""

    status_message = "Prediction failed"


class InferenceBusyError(VehicleXError):
    """Another prediction held the in-flight guard for too long."""

    status_message = "Another prediction is in progress"


class AsyncExecutionRequired(Exception):  # noqa: N818
    """Raised by a model when its graph cannot be executed synchronously.

    This is a control-flow signal for the inference engine, not a user-facing
    error: it is the only failure that triggers the asynchronous retry.
    """
