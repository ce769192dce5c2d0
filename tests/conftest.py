"""Shared fixtures: in-memory images and a classifier backend double."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Any

import pytest
from PIL import Image

from rpsclassifier.errors import ModelLoadError, PredictionError

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray


def encode_image(
    width: int,
    height: int,
    *,
    color: tuple[int, ...] = (255, 0, 0),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    fill = color[0] if mode in ("L", "P") else color
    image = Image.new(mode, (width, height), fill)
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


class FakeBackend:
    """ClassifierBackend double that records calls and returns fixed scores."""

    model_name = "fake-model"

    def __init__(
        self,
        scores: list[float] | None = None,
        *,
        load_error: bool = False,
        run_error: bool = False,
    ) -> None:
        self.scores = scores if scores is not None else [0.25, 0.75]
        self.load_error = load_error
        self.run_error = run_error
        self.load_calls = 0
        self.run_shapes: list[tuple[int, ...]] = []

    def load(self) -> Any:
        self.load_calls += 1
        if self.load_error:
            raise ModelLoadError("artifact missing")
        return object()

    def run(self, model: Any, buffer: NDArray[np.uint8]) -> list[float]:
        self.run_shapes.append(buffer.shape)
        if self.run_error:
            raise PredictionError("shape mismatch")
        return list(self.scores)


@pytest.fixture()
def image_bytes() -> Callable[..., bytes]:
    """Factory for encoded images of a given size."""
    return encode_image


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()
