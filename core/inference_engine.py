"""On-device eye disease classification with a lazily loaded TorchScript model.

The engine owns one model session shared by every request. Loading is
single-flight: concurrent first callers wait on the same attempt instead of
loading the model twice. Once READY, inference only reads the loaded weights.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import numpy as np

from core.errors import InferenceError, ModelLoadError
from core.utils import NUM_CLASSES, ProbabilityVector

logger = logging.getLogger(__name__)

ModelLoader = Callable[[Path], Callable]


def softmax(logits: Sequence[float]) -> np.ndarray:
    """Numerically stable softmax over a 1-D vector of logits."""
    z = np.asarray(logits, dtype=np.float64).reshape(-1)
    if z.size == 0:
        raise ValueError("softmax of an empty vector")
    exps = np.exp(z - np.max(z))
    return exps / np.sum(exps)


def load_torchscript_model(model_path: Path):
    """Load a TorchScript classifier on CPU in eval mode."""
    import torch

    model = torch.jit.load(str(model_path), map_location="cpu")
    model.eval()
    return model


class ModelState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"


@dataclass(frozen=True)
class ModelStatus:
    state: ModelState
    error: str = ""

    @property
    def is_loaded(self) -> bool:
        return self.state == ModelState.READY

    @property
    def is_loading(self) -> bool:
        return self.state == ModelState.LOADING

    @property
    def is_ready(self) -> bool:
        return self.state == ModelState.READY


class _LoadAttempt:
    def __init__(self):
        self.done = threading.Event()
        self.error: Optional[ModelLoadError] = None


class LocalInferenceEngine:
    """Runs the packaged classifier on preprocessed image tensors."""

    def __init__(
        self,
        model_path: Optional[Union[str, Path]],
        loader: ModelLoader = load_torchscript_model,
        load_timeout: float = 60.0,
    ):
        self._model_path = Path(model_path) if model_path else None
        self._loader = loader
        self._load_timeout = load_timeout
        self._lock = threading.Lock()
        self._state = ModelState.UNLOADED
        self._session = None
        self._attempt: Optional[_LoadAttempt] = None
        self._last_error = ""

    @property
    def model_path(self) -> Optional[Path]:
        return self._model_path

    @property
    def state(self) -> ModelState:
        return self._state

    def status(self) -> ModelStatus:
        with self._lock:
            return ModelStatus(self._state, self._last_error)

    def ensure_loaded(self) -> None:
        """Load the model unless it is already READY.

        The loader runs on its own thread, so every caller, including the one
        that started the load, waits at most load_timeout. A load that outlives
        the timeout keeps running and later callers wait on the same attempt.

        Raises ModelLoadError when the artifact cannot be loaded or the load
        does not finish within the load timeout.
        """
        with self._lock:
            if self._state == ModelState.READY:
                return
            if self._state == ModelState.LOADING and self._attempt is not None:
                attempt = self._attempt
                owner = False
            else:
                attempt = _LoadAttempt()
                self._attempt = attempt
                self._state = ModelState.LOADING
                owner = True

        if owner:
            threading.Thread(
                target=self._run_load, args=(attempt,), name="model-load", daemon=True,
            ).start()
        if not attempt.done.wait(self._load_timeout):
            raise ModelLoadError(f"Timed out after {self._load_timeout:g}s waiting for model load")

        if attempt.error is not None:
            raise attempt.error

    def _run_load(self, attempt: _LoadAttempt) -> None:
        session = None
        try:
            session = self._load_session()
        except ModelLoadError as exc:
            attempt.error = exc
        except Exception as exc:
            error = ModelLoadError(f"Failed to load model {self._model_path}: {exc}")
            error.__cause__ = exc
            attempt.error = error

        with self._lock:
            if attempt.error is None:
                self._session = session
                self._state = ModelState.READY
                self._last_error = ""
            else:
                self._state = ModelState.LOAD_FAILED
                self._last_error = str(attempt.error)
            self._attempt = None
        attempt.done.set()

        if attempt.error is None:
            logger.info("Local model ready: %s", self._model_path)
        else:
            logger.warning("Local model load failed: %s", attempt.error)

    def _load_session(self):
        if self._model_path is None:
            raise ModelLoadError("No local model configured")
        if not self._model_path.is_file():
            raise ModelLoadError(f"Model file not found: {self._model_path}")
        logger.info("Loading local model from %s", self._model_path)
        return self._loader(self._model_path)

    def infer(self, tensor) -> ProbabilityVector:
        """Run a forward pass and convert logits to probabilities."""
        session = self._session
        if self._state != ModelState.READY or session is None:
            raise InferenceError("Model is not loaded")

        import torch

        try:
            with torch.inference_mode():
                outputs = session(tensor)
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc

        if isinstance(outputs, (tuple, list)):
            if not outputs:
                raise InferenceError("Model returned no outputs")
            outputs = outputs[0]
        if isinstance(outputs, torch.Tensor):
            outputs = outputs.detach().cpu().numpy()

        logits = np.asarray(outputs, dtype=np.float64).reshape(-1)
        if logits.size != NUM_CLASSES:
            raise InferenceError(f"Expected {NUM_CLASSES} logits, got {logits.size}")
        if not np.all(np.isfinite(logits)):
            raise InferenceError(f"Model output contains NaN or inf: {logits.tolist()}")
        if not np.any(logits):
            raise InferenceError("Model output is all zeros")

        try:
            return ProbabilityVector(tuple(softmax(logits).tolist()))
        except ValueError as exc:
            raise InferenceError(f"Invalid probabilities from model output: {exc}") from exc

    def release(self) -> None:
        """Drop the loaded session; the next ensure_loaded() loads again."""
        with self._lock:
            if self._state == ModelState.LOADING:
                logger.debug("Release requested while a load is in flight; ignoring")
                return
            had_session = self._session is not None
            self._session = None
            self._state = ModelState.UNLOADED
            self._last_error = ""
        if had_session:
            logger.info("Local model released")
