"""Shared fixtures: in-memory images and a mocked ONNX Runtime session."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


@pytest.fixture()
def make_image() -> Callable[..., bytes]:
    """Factory for encoded test images (solid color unless ``pixels`` is given)."""

    def _make(
        width: int = 32,
        height: int = 24,
        color: tuple[int, ...] = (200, 40, 40),
        mode: str = "RGB",
        fmt: str = "PNG",
        pixels: np.ndarray | None = None,
    ) -> bytes:
        if pixels is not None:
            image = Image.fromarray(pixels)
        else:
            image = Image.new(mode, (width, height), color)
        buffer = io.BytesIO()
        image.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    """A placeholder model artifact on disk (the session itself is mocked)."""
    path = tmp_path / "model.onnx"
    path.write_bytes(b"not-a-real-onnx-graph")
    return path


@pytest.fixture()
def ort_session() -> Iterator[MagicMock]:
    """Patch InferenceSession so the manager builds a mock that predicts p(Heavy)=0.72."""
    with patch("vehiclex.ml.model_manager.InferenceSession") as session_cls:
        session = MagicMock()
        input_meta = MagicMock()
        input_meta.name = "input_1"
        session.get_inputs.return_value = [input_meta]
        session.run.return_value = [np.array([[0.72]], dtype=np.float32)]
        session_cls.return_value = session
        yield session
