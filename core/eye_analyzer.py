"""Eye disease screening: cataract, diabetic retinopathy and glaucoma.

Prediction tiers are tried strictly in the configured order (by default the
hosted service, then the on-device model, then the offline placeholder). A
tier either returns a ProbabilityVector or raises a TierError, in which case
the next tier runs. The offline tier cannot fail, so analyze() always returns
a PredictionResult unless no image was given at all.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.errors import InputError, RemoteError, RemoteErrorKind, TierError
from core.image_preprocessor import ImagePreprocessor
from core.inference_engine import LocalInferenceEngine, ModelStatus
from core.model_manager import ModelInfo, ModelManager
from core.offline_predictor import OfflinePredictor
from core.remote_client import RemoteInferenceClient
from core.utils import (
    AnalysisConfig,
    ImageRef,
    PredictionResult,
    PredictionSource,
    ProbabilityVector,
    ProgressCallback,
    describe_image_ref,
    is_blank_image_ref,
)

logger = logging.getLogger(__name__)

REMOTE_MODEL_NAME = "remote-service"
OFFLINE_MODEL_NAME = "offline-fallback"

_TIER_MESSAGES = {
    PredictionSource.REMOTE_SERVICE: "Contacting analysis server...",
    PredictionSource.LOCAL_MODEL: "Running on-device model...",
    PredictionSource.OFFLINE_FALLBACK: "Using offline analysis...",
}


def build_result(
    probabilities: ProbabilityVector,
    source: PredictionSource,
    image_ref: str = "",
    processing_time_ms: int = 0,
    model_name: str = "",
    fallback_reasons: Sequence[Tuple[PredictionSource, str]] = (),
) -> PredictionResult:
    """Assemble a PredictionResult; the label is the argmax (lowest index on ties)."""
    return PredictionResult(
        label=probabilities.argmax(),
        probabilities=probabilities,
        source=source,
        produced_at=datetime.now(timezone.utc),
        image_ref=image_ref,
        processing_time_ms=processing_time_ms,
        model_name=model_name,
        fallback_reasons=tuple(fallback_reasons),
    )


class EyeAnalyzer:
    """Analyzes eye photos through the remote, local and offline tiers."""

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        remote_client: Optional[RemoteInferenceClient] = None,
        engine: Optional[LocalInferenceEngine] = None,
        offline_predictor: Optional[OfflinePredictor] = None,
        preprocessor: Optional[ImagePreprocessor] = None,
        model_manager: Optional[ModelManager] = None,
    ):
        self.config = config or AnalysisConfig()
        self._preprocessor = preprocessor or ImagePreprocessor(self.config.input_size)
        self._remote = remote_client or RemoteInferenceClient(
            self.config.api_base_url,
            health_timeout=self.config.health_timeout_s,
            predict_timeout=self.config.predict_timeout_s,
            probe_health=self.config.probe_health,
        )
        self._model_manager = model_manager
        if engine is None:
            engine = LocalInferenceEngine(
                self._resolve_model_path(),
                load_timeout=self.config.model_load_timeout_s,
            )
        self._engine = engine
        self._offline = offline_predictor or OfflinePredictor(seed=self.config.offline_seed)

        self._tiers: Dict[PredictionSource, Callable[[ImageRef], ProbabilityVector]] = {
            PredictionSource.REMOTE_SERVICE: self._run_remote,
            PredictionSource.LOCAL_MODEL: self._run_local,
            PredictionSource.OFFLINE_FALLBACK: self._run_offline,
        }

    def _get_model_manager(self) -> ModelManager:
        if self._model_manager is None:
            self._model_manager = ModelManager()
        return self._model_manager

    def _resolve_model_path(self):
        if self.config.model_path:
            return self.config.model_path
        return self._get_model_manager().get_model_path(self.config.model_name)

    def analyze(
        self,
        image: ImageRef,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PredictionResult:
        """Screen one eye image.

        Raises InputError if no image is given. Every other failure is
        recovered by moving on to the next tier.
        """
        if is_blank_image_ref(image):
            raise InputError("No image provided for analysis")

        start_time = time.time()
        image_ref = describe_image_ref(image)
        order = self.config.resolved_tier_order()
        total = len(order) + 1

        def report(step, msg):
            if on_progress:
                on_progress(step, total, msg)

        failures: List[Tuple[PredictionSource, str]] = []
        probabilities: Optional[ProbabilityVector] = None
        source = PredictionSource.OFFLINE_FALLBACK

        for step, source in enumerate(order, start=1):
            report(step, _TIER_MESSAGES[source])
            try:
                probabilities = self._tiers[source](image)
            except TierError as exc:
                self._log_fallback(source, exc)
                failures.append((source, str(exc)))
                continue
            except Exception as exc:
                logger.exception("Tier %s raised unexpectedly, falling through", source.value)
                failures.append((source, f"{type(exc).__name__}: {exc}"))
                continue
            break

        if probabilities is None:
            source = PredictionSource.OFFLINE_FALLBACK
            probabilities = self._run_offline(image)

        report(total, "Building results...")

        elapsed_ms = int((time.time() - start_time) * 1000)
        result = build_result(
            probabilities,
            source,
            image_ref=image_ref,
            processing_time_ms=elapsed_ms,
            model_name=self._model_name_for(source),
            fallback_reasons=failures,
        )

        if result.is_offline:
            logger.warning(
                "Screening degraded to offline fallback for %s: %s (%.0f%%)",
                image_ref, result.label.value, result.confidence_score * 100,
            )
        else:
            logger.info(
                "Screening complete via %s for %s: %s (%.0f%%, %s, %s)",
                source.value, image_ref, result.label.value, result.confidence_score * 100,
                result.confidence.value, result.urgency.value,
            )
        return result

    def _run_remote(self, image: ImageRef) -> ProbabilityVector:
        eye_image = self._preprocessor.read_image(image)
        return self._remote.predict(eye_image).probabilities

    def _run_local(self, image: ImageRef) -> ProbabilityVector:
        tensor = self._preprocessor.preprocess(image)
        self._engine.ensure_loaded()
        return self._engine.infer(tensor)

    def _run_offline(self, image: ImageRef) -> ProbabilityVector:
        return self._offline.predict()

    def _model_name_for(self, source: PredictionSource) -> str:
        if source == PredictionSource.LOCAL_MODEL:
            return self.config.model_name
        if source == PredictionSource.REMOTE_SERVICE:
            return REMOTE_MODEL_NAME
        return OFFLINE_MODEL_NAME

    @staticmethod
    def _log_fallback(source: PredictionSource, exc: TierError) -> None:
        extra = {"source": source.value}
        if isinstance(exc, RemoteError) and exc.kind == RemoteErrorKind.TIMEOUT:
            logger.warning("Tier %s timed out, falling through: %s", source.value, exc, extra=extra)
        else:
            logger.warning(
                "Tier %s failed (%s), falling through: %s",
                source.value, type(exc).__name__, exc, extra=extra,
            )

    # --- Model lifecycle ---

    def load_model(self) -> None:
        """Warm up the on-device model. Raises ModelLoadError on failure."""
        self._engine.ensure_loaded()

    def release_model(self) -> None:
        self._engine.release()

    def model_status(self) -> ModelStatus:
        return self._engine.status()

    def get_model_info(self) -> Optional[ModelInfo]:
        return self._get_model_manager().get_model_info(self.config.model_name)

    @property
    def model_path(self) -> Optional[Path]:
        return self._engine.model_path

    def is_model_available(self) -> bool:
        """Whether the on-device model artifact is present and non-empty."""
        path = self.model_path
        return path is not None and path.is_file() and path.stat().st_size > 0

    def check_service(self) -> bool:
        """Whether the hosted prediction service answers its health check."""
        return self._remote.is_connected() and self._remote.check_health()

    def close(self) -> None:
        """Release the local model and the remote client's HTTP session."""
        self._engine.release()
        self._remote.close()
