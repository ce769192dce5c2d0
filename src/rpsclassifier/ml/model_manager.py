"""Model manager: fetch, load, run, and optionally cache the ONNX classifier.

The classifier artifact is either a local file or a file in a HuggingFace
repo. By default a fresh InferenceSession is created for every prediction
request; with caching enabled sessions are reused and evicted after a TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

from rpsclassifier.errors import ModelLoadError, PredictionError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from rpsclassifier.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test doubles)
# ---------------------------------------------------------------------------


class ClassifierBackend(Protocol):
    """Two-operation interface to the external classifier."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def load(self) -> Any:
        """Fetch and parse the classifier artifact.

        Raises:
            ModelLoadError: If the artifact cannot be fetched or parsed.
        """
        ...

    def run(self, model: Any, buffer: NDArray[np.uint8]) -> list[float]:
        """Run a loaded model on a (1, H, W, 3) buffer and return raw scores.

        Raises:
            PredictionError: If the buffer does not fit the model input.
        """
        ...


# ---------------------------------------------------------------------------
# Input element types
# ---------------------------------------------------------------------------

_ONNX_DTYPES: dict[str, type[np.generic]] = {
    "tensor(float)": np.float32,
    "tensor(double)": np.float64,
    "tensor(float16)": np.float16,
    "tensor(uint8)": np.uint8,
    "tensor(int8)": np.int8,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
}


def check_input_shape(declared: list[int | str | None], shape: tuple[int, ...]) -> None:
    """Raise PredictionError if shape cannot feed an input of the declared shape.

    Symbolic (str) and unknown (None) dimensions match anything.
    """
    if len(declared) != len(shape):
        raise PredictionError(f"Model expects a rank-{len(declared)} input, got shape {list(shape)}")
    for axis, (expected, actual) in enumerate(zip(declared, shape, strict=True)):
        if isinstance(expected, int) and expected > 0 and expected != actual:
            raise PredictionError(
                f"Model expects size {expected} on axis {axis}, got shape {list(shape)}",
            )


# ---------------------------------------------------------------------------
# Session configuration
# ---------------------------------------------------------------------------

Provider = str | tuple[str, dict[str, object]]


def execution_providers(settings: Settings) -> list[Provider]:
    """Provider for the configured device, always backed by CPU."""
    preferred: list[Provider] = []
    if settings.device == "cuda":
        preferred.append(
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            )
        )
    elif settings.device == "openvino":
        preferred.append(("OpenVINOExecutionProvider", {"device_type": "CPU"}))
    return [*preferred, "CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    """Options shared by every session built from the classifier artifact.

    A session built per request only gets basic graph optimization; a cached
    one gets the full pass. OpenVINO optimizes the graph itself.
    """
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

    if settings.device == "openvino":
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    elif settings.cache_model:
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_ALL
    else:
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_BASIC
    return opts


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Loads and runs the ONNX classifier, caching sessions when configured."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._cached: _CachedSession | None = None
        self._model_path: Path | None = None

        self._providers = execution_providers(settings)
        self._session_options = session_options(settings)

    # -- Public API ---------------------------------------------------------

    @property
    def model_name(self) -> str:
        if self._settings.model_repo_id is not None:
            return f"{self._settings.model_repo_id}/{self._settings.model_filename}"
        return self._settings.model_path

    def ensure_downloaded(self) -> Path:
        """Return the local artifact path, downloading it from the Hub if configured."""
        if self._model_path is not None and self._model_path.exists():
            return self._model_path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            path = Path(self._settings.model_path)
            if not path.is_file():
                raise ModelLoadError(f"Model file not found: {path}")
            self._model_path = path
            return path

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=self._settings.model_filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadError(f"Could not download {self.model_name}: {exc}") from exc
        self._model_path = downloaded
        logger.info("Downloaded %s to %s", self.model_name, downloaded)
        return downloaded

    def load(self) -> InferenceSession:
        """Return an InferenceSession, from the cache when caching is enabled."""
        if self._settings.cache_model:
            with self._lock:
                if self._cached is not None:
                    self._cached.last_used = time.monotonic()
                    return self._cached.session

        session = self._create_session()
        if not self._settings.cache_model:
            return session

        with self._lock:
            # Another thread may have loaded it meanwhile.
            if self._cached is not None:
                self._cached.last_used = time.monotonic()
                return self._cached.session
            self._cached = _CachedSession(session=session, last_used=time.monotonic())
            logger.info("Cached session for %s", self.model_name)
            return session

    def run(self, model: InferenceSession, buffer: NDArray[np.uint8]) -> list[float]:
        """Feed the buffer to the first model input and return the first output, flattened."""
        model_input = model.get_inputs()[0]
        check_input_shape(list(model_input.shape), buffer.shape)

        dtype = _ONNX_DTYPES.get(model_input.type)
        if dtype is None:
            raise PredictionError(f"Unsupported model input type {model_input.type}")

        feed = {model_input.name: buffer.astype(dtype, copy=False)}
        try:
            outputs = model.run(None, feed)
        except Exception as exc:  # onnxruntime raises its own pybind exception types
            raise PredictionError(f"Inference failed: {exc}") from exc

        if not outputs:
            raise PredictionError("Model produced no outputs")
        scores = np.asarray(outputs[0]).ravel()
        return [float(value) for value in scores]

    def get_loaded_models(self) -> list[str]:
        """Return names of models with a cached session."""
        with self._lock:
            return [self.model_name] if self._cached is not None else []

    def unload_idle_models(self) -> None:
        """Drop the cached session if it has exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            if self._cached is not None and (now - self._cached.last_used) > ttl:
                self._cached = None
                logger.info("Evicted idle session for %s", self.model_name)

    def shutdown(self) -> None:
        """Clear the cached session."""
        with self._lock:
            self._cached = None
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _create_session(self) -> InferenceSession:
        model_path = self.ensure_downloaded()
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # invalid graphs surface as onnxruntime pybind exceptions
            raise ModelLoadError(f"Could not parse {model_path}: {exc}") from exc
        logger.info("Loaded session for %s", self.model_name)
        return session

