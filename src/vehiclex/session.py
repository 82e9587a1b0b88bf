"""Classification session: the one owner of mutable prediction state.

Mutation points:
    model      -- set once by ``load_model``
    threshold  -- ``set_threshold`` (user action)
    image      -- ``select_image`` / ``clear_image``
    result     -- set by ``predict``, cleared on image change or failure
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING

from vehiclex.errors import DecodeError, InferenceBusyError, InferenceError, ModelLoadError
from vehiclex.ml.buffers import BufferScope
from vehiclex.ml.decision import PredictionResult, decide, validate_threshold
from vehiclex.ml.inference import InferenceEngine
from vehiclex.ml.model_manager import ModelState
from vehiclex.ml.preprocessing import decode_image, preprocess

if TYPE_CHECKING:
    from vehiclex.config import Settings
    from vehiclex.ml.inference import InferencePool
    from vehiclex.ml.model_manager import OnnxModelManager
    from vehiclex.ml.preprocessing import ImageResource

logger = logging.getLogger(__name__)

STATUS_LOADING = "Loading model..."
STATUS_READY = "Model loaded"
STATUS_NO_IMAGE = "Select an image first"
STATUS_IMAGE_READY = "Image ready"
STATUS_DONE = "Prediction complete"


class ClassificationSession:
    """Holds the model handle, threshold, current image and current result."""

    def __init__(self, settings: Settings, model_manager: OnnxModelManager, pool: InferencePool) -> None:
        self._settings = settings
        self._models = model_manager
        self._pool = pool
        self._engine = InferenceEngine(pool)

        self._threshold = validate_threshold(settings.default_threshold)
        self._image: ImageResource | None = None
        self._selection = 0
        self._result: PredictionResult | None = None
        self._status = STATUS_LOADING

    # -- State --------------------------------------------------------------

    @property
    def status(self) -> str:
        return self._status

    @property
    def model_state(self) -> ModelState:
        return self._models.state

    @property
    def model_status(self) -> str:
        """Status line describing the model lifecycle alone."""
        state = self.model_state
        if state is ModelState.READY:
            return STATUS_READY
        if state is ModelState.LOAD_FAILED:
            return ModelLoadError.status_message
        return STATUS_LOADING

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def image(self) -> ImageResource | None:
        return self._image

    @property
    def result(self) -> PredictionResult | None:
        return self._result

    @property
    def can_predict(self) -> bool:
        return self.model_state is ModelState.READY and self._image is not None

    # -- Mutation points ----------------------------------------------------

    async def load_model(self) -> bool:
        """Load the model in the inference thread pool. Returns False on failure."""
        self._status = STATUS_LOADING
        try:
            await self._pool.run_in_thread(self._models.load)
        except ModelLoadError as exc:
            self._status = exc.status_message
            logger.error("Prediction disabled: %s", exc)
            return False
        self._status = STATUS_READY
        return True

    def set_threshold(self, value: float) -> float:
        """Set the threshold used by the next prediction. The current result is kept as is."""
        self._threshold = validate_threshold(value)
        logger.info("Threshold set to %.2f", self._threshold)
        return self._threshold

    async def select_image(self, data: bytes, filename: str = "upload") -> ImageResource:
        """Replace the current image. The previous image and result are dropped first.

        Decoding runs in the inference thread pool.

        Raises:
            DecodeError: If ``data`` is not a usable image.
        """
        self._result = None
        self._image = None
        self._selection += 1
        selection = self._selection
        try:
            image = await self._pool.run_in_thread(
                partial(decode_image, data, filename, max_pixels=self._settings.max_image_pixels)
            )
        except DecodeError as exc:
            self._status = exc.status_message
            logger.warning("Rejected image: %s", exc)
            raise
        if selection != self._selection:
            logger.info("Discarding %s: a newer image was selected while decoding", filename)
            return image
        self._image = image
        self._status = STATUS_IMAGE_READY
        return image

    def clear_image(self) -> None:
        self._selection += 1
        self._image = None
        self._result = None
        if self.model_state is ModelState.READY:
            self._status = STATUS_READY

    async def predict(self) -> PredictionResult | None:
        """Classify the current image with the current threshold.

        Returns None without doing anything when the model is not ready or no
        image is selected.

        Raises:
            DecodeError, InferenceError, InferenceBusyError: The prediction was
                aborted; the previous result has been discarded.
        """
        state = self.model_state
        if state is not ModelState.READY:
            logger.info("Ignoring prediction request: model is %s", state)
            self._status = self.model_status
            return None
        image = self._image
        if image is None:
            self._status = STATUS_NO_IMAGE
            return None

        model = self._models.get_model()
        threshold = self._threshold
        try:
            with BufferScope(image.filename) as scope:
                batch = await self._pool.run_in_thread(preprocess, image, self._settings.img_size, scope)
                prob_heavy = await self._engine.infer(model, batch, scope)
        except (DecodeError, InferenceError, InferenceBusyError) as exc:
            self._result = None
            self._status = exc.status_message
            raise

        result = decide(prob_heavy, threshold)
        if self._image is image:
            self._result = result
        else:
            logger.info("Image changed during prediction; not storing result for %s", image.filename)
        self._status = STATUS_DONE
        logger.info(
            "Predicted %s for %s (p_heavy=%.4f, threshold=%.2f, confidence=%.1f%%)",
            result.label,
            image.filename,
            result.prob_heavy,
            threshold,
            result.confidence_percent,
        )
        return result
