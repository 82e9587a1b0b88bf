"""Model manager: resolve, load and hold the vehicle classifier ONNX session.

The artifact comes from a fixed local path when one is configured, otherwise
it is downloaded from the HuggingFace Hub. The session is created exactly
once per process; a failed load is terminal.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from vehiclex.errors import ModelLoadError, ModelNotReadyError
from vehiclex.ml.classifier import OnnxVehicleModel

if TYPE_CHECKING:
    from vehiclex.config import Settings

logger = logging.getLogger(__name__)


class ModelState(StrEnum):
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"


@dataclass(frozen=True)
class ModelSpec:
    """Where the classifier artifact lives."""

    repo_id: str
    filename: str
    revision: str | None
    local_path: Path | None

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelSpec:
        return cls(
            repo_id=settings.model_repo_id,
            filename=settings.model_filename,
            revision=settings.model_revision,
            local_path=Path(settings.model_path) if settings.model_path else None,
        )


class OnnxModelManager:
    """Loads the classifier session once and reports its lifecycle state."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._spec = ModelSpec.from_settings(settings)
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._state = ModelState.LOADING
        self._load_started = False
        self._error: str | None = None
        self._model: OnnxVehicleModel | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ModelState:
        with self._lock:
            return self._state

    @property
    def error(self) -> str | None:
        """Reason for ``LOAD_FAILED``, if any."""
        with self._lock:
            return self._error

    def ensure_available(self) -> Path:
        """Return the local model file, downloading it from HuggingFace if needed."""
        local = self._spec.local_path
        if local is not None:
            if not local.is_file():
                raise ModelLoadError(f"Model file not found: {local}")
            return local

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._spec.repo_id,
                    filename=self._spec.filename,
                    revision=self._spec.revision,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadError(f"Could not download {self._spec.repo_id}/{self._spec.filename}: {exc}") from exc
        logger.info("Downloaded %s/%s to %s", self._spec.repo_id, self._spec.filename, downloaded)
        return downloaded

    def load(self) -> OnnxVehicleModel:
        """Create the inference session. Blocking; call from a worker thread.

        Raises:
            ModelLoadError: If the artifact cannot be resolved or the session
                cannot be created, now or on an earlier attempt.
        """
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_started:
                raise ModelLoadError(self._error or "Model load already attempted")
            self._load_started = True

        try:
            model_path = self.ensure_available()
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
            model = OnnxVehicleModel(session)
        except Exception as exc:
            reason = str(exc)
            with self._lock:
                self._state = ModelState.LOAD_FAILED
                self._error = reason
            logger.error("Model load failed: %s", reason)
            if isinstance(exc, ModelLoadError):
                raise
            raise ModelLoadError(reason) from exc

        with self._lock:
            self._model = model
            self._state = ModelState.READY
        logger.info("Loaded session for %s (input=%s)", model_path.name, model.input_name)
        return model

    def get_model(self) -> OnnxVehicleModel:
        """Return the loaded model.

        Raises:
            ModelNotReadyError: While loading, or after a failed load.
        """
        with self._lock:
            if self._model is None:
                raise ModelNotReadyError(f"Model is {self._state}")
            return self._model

    def shutdown(self) -> None:
        """Drop the session."""
        with self._lock:
            self._model = None
            logger.info("Model session released")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
