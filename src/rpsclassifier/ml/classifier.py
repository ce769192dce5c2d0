"""Classification pipeline: load the model, preprocess the upload, run it."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rpsclassifier.ml.preprocessing import preprocess_image

if TYPE_CHECKING:
    from rpsclassifier.config import Settings
    from rpsclassifier.ml.model_manager import ClassifierBackend

logger = logging.getLogger(__name__)


class ImageClassifier:
    """Runs uploaded images through a ClassifierBackend.

    The model is loaded before the image is decoded, so a missing artifact is
    reported without touching the upload.
    """

    def __init__(self, backend: ClassifierBackend, settings: Settings) -> None:
        self._backend = backend
        self._max_width = settings.max_width
        self._max_height = settings.max_height
        self._max_pixels = settings.max_image_pixels

    @property
    def backend(self) -> ClassifierBackend:
        return self._backend

    def classify(self, data: bytes) -> list[float]:
        """Return the raw score vector for an image blob.

        Raises:
            ModelLoadError: If the model cannot be loaded.
            DecodeError: If the blob is not a readable image.
            PredictionError: If the model rejects the pixel buffer.
        """
        model = self._backend.load()
        buffer = preprocess_image(
            data,
            max_width=self._max_width,
            max_height=self._max_height,
            max_pixels=self._max_pixels,
        )
        scores = self._backend.run(model, buffer)
        logger.info("Classified %s image with %s: %s scores", buffer.shape, self._backend.model_name, len(scores))
        return scores


def format_scores(scores: list[float]) -> str:
    """Render a score vector as comma-separated text, without rounding."""
    return ",".join(repr(score) for score in scores)
