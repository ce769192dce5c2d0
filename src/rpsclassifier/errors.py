"""Exception types and the user-facing messages they map to."""

from __future__ import annotations

MODEL_LOAD_MESSAGE = "The model failed to load due to an error."
PREDICTION_MESSAGE = "Prediction Error."
NO_FILE_MESSAGE = "Select an image."
DECODE_MESSAGE = "The image could not be read."
BUSY_MESSAGE = "The classifier is busy, try again."


class ClassifierError(Exception):
    """Base class for all rpsclassifier errors."""

    user_message: str = PREDICTION_MESSAGE


class DecodeError(ClassifierError):
    """The uploaded blob could not be decoded into an image."""

    user_message = DECODE_MESSAGE


class ModelLoadError(ClassifierError):
    """The classifier artifact could not be fetched or parsed."""

    user_message = MODEL_LOAD_MESSAGE


class PredictionError(ClassifierError):
    """The model rejected the pixel buffer or failed while running."""

    user_message = PREDICTION_MESSAGE


class ClassifierBusyError(ClassifierError):
    """No classification slot freed up in time."""

    user_message = BUSY_MESSAGE


class PredictionInProgressError(ClassifierError):
    """A prediction was requested while the session already has one running."""
