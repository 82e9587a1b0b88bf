"""Tests for the VehicleX HTTP API."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path
    from unittest.mock import MagicMock

import httpx
import pytest
from fastapi import FastAPI, status

from vehiclex.config import get_settings
from vehiclex.main import create_app
from vehiclex.ml.inference import InferencePool
from vehiclex.ml.model_manager import OnnxModelManager
from vehiclex.session import ClassificationSession


def _init_app_state(app: FastAPI, **env_overrides: str) -> ClassificationSession:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    pool = InferencePool(settings)
    manager = OnnxModelManager(settings)
    session = ClassificationSession(settings, manager, pool)
    app.state.settings = settings
    app.state.inference_pool = pool
    app.state.model_manager = manager
    app.state.session = session
    return session


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _upload(data: bytes, name: str = "vehicle.png") -> dict[str, tuple[str, bytes, str]]:
    return {"file": (name, data, "image/png")}


@pytest.fixture()
def app(model_file: Path, ort_session: MagicMock) -> FastAPI:
    """A fresh app whose model is still loading."""
    application = create_app()
    _init_app_state(application, VEHICLEX_MODEL_PATH=str(model_file), VEHICLEX_IMG_SIZE="32")
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client against an app whose model has not loaded yet."""
    async for ac in _make_client(app):
        yield ac


@pytest.fixture()
async def ready_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client against an app with the (mocked) model loaded."""
    session: ClassificationSession = app.state.session
    assert await session.load_model() is True
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_while_loading(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["model_state"] == "loading"
        assert data["message"] == "Loading model..."
        assert data["gpu"] is False
        assert data["can_predict"] is False
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_when_ready(self, ready_client: httpx.AsyncClient) -> None:
        data = (await ready_client.get("/api/v1/health")).json()
        assert data["model_state"] == "ready"
        assert data["message"] == "Model loaded"
        assert data["image_selected"] is False

    async def test_health_after_load_failure(self, tmp_path: Path) -> None:
        failed_app = create_app()
        session = _init_app_state(failed_app, VEHICLEX_MODEL_PATH=str(tmp_path / "missing.onnx"))
        await session.load_model()
        async for ac in _make_client(failed_app):
            data = (await ac.get("/api/v1/health")).json()
            assert data["model_state"] == "load_failed"
            assert data["message"] == "Model failed to load"


class TestThresholdEndpoint:
    async def test_default_threshold(self, client: httpx.AsyncClient) -> None:
        data = (await client.get("/api/v1/threshold")).json()
        assert data == {"threshold": 0.5, "minimum": 0.3, "maximum": 0.8, "step": 0.01}

    async def test_set_threshold(self, client: httpx.AsyncClient) -> None:
        response = await client.put("/api/v1/threshold", json={"threshold": 0.65})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["threshold"] == 0.65
        assert (await client.get("/api/v1/threshold")).json()["threshold"] == 0.65

    @pytest.mark.parametrize("value", [0.2, 0.81])
    async def test_out_of_range_rejected(self, client: httpx.AsyncClient, value: float) -> None:
        response = await client.put("/api/v1/threshold", json={"threshold": value})
        assert response.status_code == 422


class TestImageEndpoint:
    async def test_select_image(self, client: httpx.AsyncClient, make_image: Callable[..., bytes]) -> None:
        response = await client.post("/api/v1/image", files=_upload(make_image(width=40, height=30)))
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"filename": "vehicle.png", "width": 40, "height": 30, "status": "Image ready"}

    async def test_undecodable_image(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/image", files=_upload(b"fake image data", "test.jpg"))
        assert response.status_code == 422
        assert response.json()["detail"].startswith("Could not decode image")

    async def test_file_too_large(self, model_file: Path, make_image: Callable[..., bytes]) -> None:
        small_app = create_app()
        _init_app_state(small_app, VEHICLEX_MODEL_PATH=str(model_file), VEHICLEX_MAX_FILE_SIZE="16")
        async for ac in _make_client(small_app):
            response = await ac.post("/api/v1/image", files=_upload(make_image()))
            assert response.status_code == 413

    async def test_clear_image(self, ready_client: httpx.AsyncClient, make_image: Callable[..., bytes]) -> None:
        await ready_client.post("/api/v1/classify", files=_upload(make_image()))
        response = await ready_client.delete("/api/v1/image")
        assert response.status_code == status.HTTP_204_NO_CONTENT
        assert (await ready_client.get("/api/v1/result")).status_code == status.HTTP_404_NOT_FOUND


class TestPredictEndpoint:
    async def test_predict_while_loading_returns_503(
        self, client: httpx.AsyncClient, make_image: Callable[..., bytes], ort_session: MagicMock
    ) -> None:
        await client.post("/api/v1/image", files=_upload(make_image()))
        response = await client.post("/api/v1/predict")
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Loading model..."
        ort_session.run.assert_not_called()

    async def test_predict_without_image_returns_409(self, ready_client: httpx.AsyncClient) -> None:
        response = await ready_client.post("/api/v1/predict")
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_predict_heavy(self, ready_client: httpx.AsyncClient, make_image: Callable[..., bytes]) -> None:
        await ready_client.post("/api/v1/image", files=_upload(make_image()))
        response = await ready_client.post("/api/v1/predict")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] == "Heavy"
        assert data["confidence"] == pytest.approx(72.0)
        assert data["prob_heavy_percent"] == pytest.approx(72.0)
        assert data["prob_light_percent"] == pytest.approx(28.0)
        assert data["threshold"] == 0.5

        stored = (await ready_client.get("/api/v1/result")).json()
        assert stored == data

    async def test_threshold_change_keeps_stale_result(
        self, ready_client: httpx.AsyncClient, make_image: Callable[..., bytes]
    ) -> None:
        await ready_client.post("/api/v1/classify", files=_upload(make_image()))
        await ready_client.put("/api/v1/threshold", json={"threshold": 0.75})

        stored = (await ready_client.get("/api/v1/result")).json()
        assert stored["label"] == "Heavy"
        assert stored["threshold"] == 0.5

        fresh = (await ready_client.post("/api/v1/predict")).json()
        assert fresh["label"] == "Light"
        assert fresh["confidence"] == pytest.approx(28.0)

    async def test_inference_failure_returns_500(
        self, ready_client: httpx.AsyncClient, make_image: Callable[..., bytes], ort_session: MagicMock
    ) -> None:
        await ready_client.post("/api/v1/classify", files=_upload(make_image()))
        ort_session.run.side_effect = RuntimeError("session crashed")

        response = await ready_client.post("/api/v1/predict")
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["detail"] == "Prediction failed"
        assert (await ready_client.get("/api/v1/result")).status_code == status.HTTP_404_NOT_FOUND


class TestClassifyEndpoint:
    async def test_classify_one_shot(self, ready_client: httpx.AsyncClient, make_image: Callable[..., bytes]) -> None:
        response = await ready_client.post("/api/v1/classify", files=_upload(make_image()))
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["label"] == "Heavy"

    async def test_classify_bad_image(self, ready_client: httpx.AsyncClient) -> None:
        response = await ready_client.post("/api/v1/classify", files=_upload(b"fake image data"))
        assert response.status_code == 422

    async def test_classify_after_load_failure(self, tmp_path: Path, make_image: Callable[..., bytes]) -> None:
        failed_app = create_app()
        session = _init_app_state(failed_app, VEHICLEX_MODEL_PATH=str(tmp_path / "missing.onnx"))
        await session.load_model()
        async for ac in _make_client(failed_app):
            response = await ac.post("/api/v1/classify", files=_upload(make_image()))
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert response.json()["detail"] == "Model failed to load"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, VEHICLEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_bearer_key(self) -> None:
        app = create_app()
        _init_app_state(app, VEHICLEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_passes_with_header_key(self) -> None:
        app = create_app()
        _init_app_state(app, VEHICLEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, VEHICLEX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
