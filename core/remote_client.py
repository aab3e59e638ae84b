"""Client for the hosted eye disease prediction service.

Endpoints:
    GET  /health   200 when the service is up
    GET  /         service info
    POST /predict  multipart upload (field "file"), JSON prediction back

The hosted service can take a while to wake from sleep, so a failed health
probe is only logged and the prediction request is still attempted with a
longer timeout.
"""

import logging
import math
import socket
from dataclasses import dataclass
from numbers import Real
from typing import Callable, Optional

import requests

from core.errors import RemoteError
from core.image_preprocessor import EyeImage
from core.utils import ClassLabel, ConfidenceTier, ProbabilityVector

logger = logging.getLogger(__name__)


def has_network_connection(probe_host: str = "8.8.8.8", probe_port: int = 80) -> bool:
    """Cheap local check for a usable network route.

    Connecting a UDP socket only asks the OS for a route; no packet is sent.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((probe_host, probe_port))
        return True
    except OSError:
        return False


@dataclass(frozen=True)
class RemotePrediction:
    """Validated /predict response."""
    label: ClassLabel
    confidence: float
    confidence_level: Optional[ConfidenceTier]
    probabilities: ProbabilityVector


def _is_number(value) -> bool:
    if not isinstance(value, Real) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # JSON integers too large for a float
        return False


def parse_prediction_response(payload) -> RemotePrediction:
    """Validate a /predict JSON body against the fixed four-class schema.

    Raises RemoteError (MALFORMED_RESPONSE) on any deviation.
    """
    if not isinstance(payload, dict):
        raise RemoteError.malformed(f"expected a JSON object, got {type(payload).__name__}")

    prediction = payload.get("prediction")
    if not isinstance(prediction, str):
        raise RemoteError.malformed("missing 'prediction'")
    try:
        label = ClassLabel.from_name(prediction)
    except ValueError as exc:
        raise RemoteError.malformed(str(exc)) from exc

    confidence = payload.get("confidence")
    if not _is_number(confidence) or not 0.0 <= confidence <= 1.0:
        raise RemoteError.malformed(f"'confidence' must be a number in [0, 1], got {confidence!r}")

    level = payload.get("confidence_level")
    confidence_level = None
    if level is not None:
        try:
            confidence_level = ConfidenceTier(level)
        except ValueError as exc:
            raise RemoteError.malformed(f"unknown confidence_level {level!r}") from exc

    raw_probs = payload.get("all_probabilities")
    if not isinstance(raw_probs, dict):
        raise RemoteError.malformed("missing 'all_probabilities'")
    if not all(_is_number(v) for v in raw_probs.values()):
        raise RemoteError.malformed("'all_probabilities' values must be numbers")
    try:
        probabilities = ProbabilityVector.from_mapping(raw_probs)
    except ValueError as exc:
        raise RemoteError.malformed(str(exc)) from exc

    return RemotePrediction(
        label=label,
        confidence=float(confidence),
        confidence_level=confidence_level,
        probabilities=probabilities,
    )


class RemoteInferenceClient:
    """Uploads eye images to the prediction service."""

    def __init__(
        self,
        base_url: str,
        health_timeout: float = 15.0,
        predict_timeout: float = 120.0,
        probe_health: bool = True,
        session: Optional[requests.Session] = None,
        connectivity_check: Callable[[], bool] = has_network_connection,
    ):
        self.base_url = base_url.rstrip("/")
        self.health_timeout = health_timeout
        self.predict_timeout = predict_timeout
        self.probe_health = probe_health
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()
        self._connectivity_check = connectivity_check

    def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session:
            self._session.close()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def is_connected(self) -> bool:
        try:
            return bool(self._connectivity_check())
        except OSError as exc:
            logger.debug("Connectivity check failed: %s", exc)
            return False

    def check_health(self, timeout: Optional[float] = None) -> bool:
        """GET /health; True only for HTTP 200."""
        timeout = self.health_timeout if timeout is None else timeout
        try:
            r = self._session.get(self._url("/health"), timeout=timeout)
        except requests.Timeout:
            logger.info("Health check timed out after %gs (server may be sleeping)", timeout)
            return False
        except requests.RequestException as exc:
            logger.info("Health check failed: %s", exc)
            return False
        if r.status_code != 200:
            logger.info("Health check returned HTTP %d", r.status_code)
            return False
        return True

    def get_api_info(self) -> Optional[dict]:
        """GET / for service metadata, or None if unavailable."""
        try:
            r = self._session.get(self._url("/"), timeout=self.health_timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as exc:
            logger.info("Could not fetch API info: %s", exc)
            return None
        return data if isinstance(data, dict) else None

    def predict(self, image: EyeImage, timeout: Optional[float] = None) -> RemotePrediction:
        """Upload an image to /predict and return the validated prediction."""
        if not self.is_connected():
            raise RemoteError.offline()

        if self.probe_health and not self.check_health():
            logger.warning("Prediction service unhealthy, attempting request anyway")

        timeout = self.predict_timeout if timeout is None else timeout
        files = {"file": (image.filename, image.data, image.mime_type)}
        try:
            r = self._session.post(
                self._url("/predict"),
                files=files,
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise RemoteError.timeout(timeout) from exc
        except requests.RequestException as exc:
            raise RemoteError.network(str(exc)) from exc

        if not 200 <= r.status_code < 300:
            raise RemoteError.http_error(r.status_code, r.text)

        try:
            payload = r.json()
        except ValueError as exc:
            raise RemoteError.malformed(f"invalid JSON: {exc}") from exc

        prediction = parse_prediction_response(payload)
        logger.info(
            "Remote prediction: %s (%.0f%%)",
            prediction.label.value,
            prediction.confidence * 100,
        )
        return prediction
