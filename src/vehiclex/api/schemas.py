"""Pydantic request/response schemas for the VehicleX API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from vehiclex.ml.decision import THRESHOLD_MAX, THRESHOLD_MIN, THRESHOLD_STEP, VehicleClass

if TYPE_CHECKING:
    from vehiclex.ml.decision import PredictionResult


class PredictionResponse(BaseModel):
    """Heavy/light classification for the current image."""

    label: VehicleClass
    confidence: float = Field(ge=0.0, le=100.0, description="Confidence in the label, percent (1 decimal)")
    prob_heavy: float = Field(ge=0.0, le=1.0, description="Clamped model probability of the Heavy class")
    prob_heavy_percent: float = Field(ge=0.0, le=100.0)
    prob_light_percent: float = Field(ge=0.0, le=100.0)
    threshold: float

    @classmethod
    def from_result(cls, result: PredictionResult) -> PredictionResponse:
        return cls(
            label=result.label,
            confidence=result.confidence_percent,
            prob_heavy=result.prob_heavy,
            prob_heavy_percent=result.prob_heavy_percent,
            prob_light_percent=result.prob_light_percent,
            threshold=result.threshold,
        )


class ThresholdUpdate(BaseModel):
    """New decision threshold."""

    threshold: float = Field(ge=THRESHOLD_MIN, le=THRESHOLD_MAX)


class ThresholdResponse(BaseModel):
    """Current decision threshold and its bounds."""

    threshold: float
    minimum: float = THRESHOLD_MIN
    maximum: float = THRESHOLD_MAX
    step: float = THRESHOLD_STEP


class ImageResponse(BaseModel):
    """The image selected for the next prediction."""

    filename: str
    width: int
    height: int
    status: str


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    model_state: str = Field(description="Model state: 'loading', 'ready', or 'load_failed'")
    message: str = Field(description="User-facing status line")
    gpu: bool
    image_selected: bool
    can_predict: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
