"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from vehiclex.api.middleware import verify_api_key
from vehiclex.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ImageResponse,
    PredictionResponse,
    ThresholdResponse,
    ThresholdUpdate,
)
from vehiclex.errors import DecodeError, InferenceBusyError, InferenceError
from vehiclex.ml.model_manager import ModelState

if TYPE_CHECKING:
    from vehiclex.config import Settings
    from vehiclex.ml.inference import InferencePool
    from vehiclex.ml.preprocessing import ImageResource
    from vehiclex.session import ClassificationSession

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

# Literal codes: Starlette renamed the 413 and 422 constants.
_CONTENT_TOO_LARGE = 413
_UNPROCESSABLE_CONTENT = 422

_PREDICT_ERRORS = {
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    _CONTENT_TOO_LARGE: {"model": ErrorResponse},
    _UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_session(request: Request) -> ClassificationSession:
    session: ClassificationSession = request.app.state.session
    return session


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


async def _read_upload(file: UploadFile, settings: Settings) -> bytes | JSONResponse:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(
            _CONTENT_TOO_LARGE,
            f"File exceeds {settings.max_file_size} bytes",
        )
    return data


async def _select(session: ClassificationSession, data: bytes, filename: str | None) -> ImageResource | JSONResponse:
    try:
        return await session.select_image(data, filename or "upload")
    except DecodeError as exc:
        return _error(_UNPROCESSABLE_CONTENT, f"{exc.status_message}: {exc}")


async def _predict(session: ClassificationSession) -> PredictionResponse | JSONResponse:
    if session.model_state is not ModelState.READY:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, session.model_status)
    if session.image is None:
        return _error(status.HTTP_409_CONFLICT, "Select an image first")

    try:
        result = await session.predict()
    except DecodeError as exc:
        return _error(_UNPROCESSABLE_CONTENT, exc.status_message)
    except InferenceBusyError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.status_message)
    except InferenceError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.status_message)

    if result is None:
        return _error(status.HTTP_409_CONFLICT, session.status)
    return PredictionResponse.from_result(result)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and model status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    session = _get_session(request)
    return HealthResponse(
        status="ok",
        model_state=str(session.model_state),
        message=session.status,
        gpu=settings.device == "cuda",
        image_selected=session.image is not None,
        can_predict=session.can_predict,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/threshold",
    response_model=ThresholdResponse,
    summary="Current Heavy threshold",
)
async def get_threshold(request: Request) -> ThresholdResponse:
    return ThresholdResponse(threshold=_get_session(request).threshold)


@router.put(
    "/threshold",
    response_model=ThresholdResponse,
    summary="Set the Heavy threshold",
)
async def set_threshold(request: Request, body: ThresholdUpdate) -> ThresholdResponse:
    """Set the threshold for subsequent predictions; the current result is left unchanged."""
    session = _get_session(request)
    return ThresholdResponse(threshold=session.set_threshold(body.threshold))


@router.post(
    "/image",
    response_model=ImageResponse,
    responses={
        _CONTENT_TOO_LARGE: {"model": ErrorResponse},
        _UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    },
    summary="Select the image to classify",
)
async def select_image(request: Request, file: UploadFile) -> ImageResponse | JSONResponse:
    """Decode an uploaded image and make it the current one. Clears the previous result."""
    session = _get_session(request)
    data = await _read_upload(file, _get_settings(request))
    if isinstance(data, JSONResponse):
        return data
    image = await _select(session, data, file.filename)
    if isinstance(image, JSONResponse):
        return image
    return ImageResponse(filename=image.filename, width=image.width, height=image.height, status=session.status)


@router.delete(
    "/image",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Clear the current image and result",
)
async def clear_image(request: Request) -> None:
    _get_session(request).clear_image()


@router.post(
    "/predict",
    response_model=PredictionResponse,
    responses=_PREDICT_ERRORS,
    summary="Classify the current image",
)
async def predict(request: Request) -> PredictionResponse | JSONResponse:
    """Run the classifier on the current image with the current threshold."""
    return await _predict(_get_session(request))


@router.get(
    "/result",
    response_model=PredictionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Latest prediction for the current image",
)
async def get_result(request: Request) -> PredictionResponse | JSONResponse:
    result = _get_session(request).result
    if result is None:
        return _error(status.HTTP_404_NOT_FOUND, "No prediction for the current image")
    return PredictionResponse.from_result(result)


@router.post(
    "/classify",
    response_model=PredictionResponse,
    responses=_PREDICT_ERRORS,
    summary="Select an image and classify it",
)
async def classify(request: Request, file: UploadFile) -> PredictionResponse | JSONResponse:
    """Upload, select and classify an image in one request."""
    session = _get_session(request)
    if session.model_state is not ModelState.READY:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, session.model_status)

    data = await _read_upload(file, _get_settings(request))
    if isinstance(data, JSONResponse):
        return data
    selected = await _select(session, data, file.filename)
    if isinstance(selected, JSONResponse):
        return selected
    return await _predict(session)
