"""Shared types, dataclasses, configuration, and platform-specific paths."""

import logging
import math
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union


# --- Type aliases ---

ProgressCallback = Callable[[int, int, str], None]  # (step, total, message)
ImageRef = Union[str, os.PathLike, bytes]  # path, file:// or data: URI, raw bytes

PROBABILITY_TOLERANCE = 1e-3
DEFAULT_API_URL = "https://smartsight-backend.onrender.com"
DEFAULT_MODEL_NAME = "smartsight-efficientnet-b2"

DISCLAIMER = (
    "This is a screening aid, NOT a diagnostic tool. "
    "Always consult a qualified eye care professional."
)


# --- Enums ---

class ClassLabel(Enum):
    """Eye conditions the classifier can report, in model output order."""

    CATARACT = "Cataract"
    DIABETIC_RETINOPATHY = "Diabetic Retinopathy"
    GLAUCOMA = "Glaucoma"
    NORMAL = "Normal"

    @classmethod
    def ordered(cls) -> List["ClassLabel"]:
        return list(cls)

    @classmethod
    def from_index(cls, index: int) -> "ClassLabel":
        labels = cls.ordered()
        if not 0 <= index < len(labels):
            raise ValueError(f"Class index out of range: {index}")
        return labels[index]

    @classmethod
    def from_name(cls, name: str) -> "ClassLabel":
        """Resolve a wire name such as "Diabetic Retinopathy"."""
        for label in cls:
            if label.value == name:
                return label
        raise ValueError(f"Unknown class label: {name!r}")

    @property
    def index(self) -> int:
        return ClassLabel.ordered().index(self)


NUM_CLASSES = len(ClassLabel)


class ConfidenceTier(Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class UrgencyBucket(Enum):
    HEALTHY = "healthy"
    MONITOR = "monitor"
    CRITICAL = "critical"


class PredictionSource(Enum):
    LOCAL_MODEL = "local_model"
    REMOTE_SERVICE = "remote_service"
    OFFLINE_FALLBACK = "offline_fallback"


DEFAULT_TIER_ORDER: Tuple[PredictionSource, ...] = (
    PredictionSource.REMOTE_SERVICE,
    PredictionSource.LOCAL_MODEL,
    PredictionSource.OFFLINE_FALLBACK,
)


# --- Dataclasses ---

@dataclass(frozen=True)
class ProbabilityVector:
    """Per-class probabilities, one value per ClassLabel in label order.

    Construction enforces the invariant: exactly four finite, non-negative
    values summing to 1 within PROBABILITY_TOLERANCE.
    """

    values: Tuple[float, ...]

    def __post_init__(self):
        values = tuple(float(v) for v in self.values)
        if len(values) != NUM_CLASSES:
            raise ValueError(f"Expected {NUM_CLASSES} probabilities, got {len(values)}")
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Probabilities must be finite: {values}")
        if any(v < 0.0 for v in values):
            raise ValueError(f"Probabilities must be non-negative: {values}")
        total = math.fsum(values)
        if abs(total - 1.0) > PROBABILITY_TOLERANCE:
            raise ValueError(f"Probabilities must sum to 1, got {total:.6f}")
        object.__setattr__(self, "values", values)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float]) -> "ProbabilityVector":
        """Build from a dict keyed by wire name; requires exactly the four labels."""
        expected = {label.value for label in ClassLabel}
        if set(mapping.keys()) != expected:
            raise ValueError(f"Expected keys {sorted(expected)}, got {sorted(mapping.keys())}")
        return cls(tuple(mapping[label.value] for label in ClassLabel))

    def __getitem__(self, label: ClassLabel) -> float:
        return self.values[label.index]

    def __iter__(self):
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def argmax(self) -> ClassLabel:
        """Winning label; exact ties go to the lowest index."""
        best = 0
        for i, value in enumerate(self.values):
            if value > self.values[best]:
                best = i
        return ClassLabel.from_index(best)

    def top(self) -> Tuple[ClassLabel, float]:
        label = self.argmax()
        return label, self[label]

    def as_dict(self) -> Dict[str, float]:
        return {label.value: self[label] for label in ClassLabel}

    def ranked(self) -> List[Tuple[ClassLabel, float]]:
        """Labels sorted by probability, highest first (stable on ties)."""
        return sorted(
            ((label, self[label]) for label in ClassLabel),
            key=lambda pair: pair[1],
            reverse=True,
        )


@dataclass(frozen=True)
class PredictionResult:
    """Outcome of one screening, whichever tier produced it.

    Confidence tier and urgency are derived from label and probabilities on
    every access so they can never drift from the numbers.
    """

    label: ClassLabel
    probabilities: ProbabilityVector
    source: PredictionSource
    produced_at: datetime
    image_ref: str = ""
    processing_time_ms: int = 0
    model_name: str = ""
    fallback_reasons: Tuple[Tuple[PredictionSource, str], ...] = ()
    disclaimer: str = DISCLAIMER

    @property
    def confidence_score(self) -> float:
        return self.probabilities[self.label]

    @property
    def confidence(self) -> ConfidenceTier:
        from core.outcome_classifier import confidence_tier
        return confidence_tier(self.confidence_score)

    @property
    def urgency(self) -> UrgencyBucket:
        from core.outcome_classifier import classify
        return classify(self.label, self.confidence_score)[1]

    @property
    def is_offline(self) -> bool:
        return self.source == PredictionSource.OFFLINE_FALLBACK

    def to_dict(self) -> dict:
        """JSON-serialisable record, e.g. for a history store."""
        return {
            "label": self.label.value,
            "confidence": self.confidence_score,
            "confidence_level": self.confidence.value,
            "urgency": self.urgency.value,
            "source": self.source.value,
            "produced_at": self.produced_at.isoformat(),
            "image_ref": self.image_ref,
            "processing_time_ms": self.processing_time_ms,
            "model_name": self.model_name,
            "all_probabilities": self.probabilities.as_dict(),
            "detected_features": [
                f"{label.value}: {prob * 100:.1f}%" for label, prob in self.probabilities.ranked()
            ],
            "fallback_reasons": [
                {"source": source.value, "reason": reason}
                for source, reason in self.fallback_reasons
            ],
            "disclaimer": self.disclaimer,
        }


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name) or default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass
class AnalysisConfig:
    """Configuration for the screening pipeline.

    Environment overrides are read when the config is constructed.
    """

    api_base_url: str = field(default_factory=lambda: _env_str("SMARTSIGHT_API_URL", DEFAULT_API_URL))
    health_timeout_s: float = field(default_factory=lambda: _env_float("SMARTSIGHT_HEALTH_TIMEOUT", 15.0))
    predict_timeout_s: float = field(default_factory=lambda: _env_float("SMARTSIGHT_PREDICT_TIMEOUT", 120.0))
    probe_health: bool = True
    model_name: str = DEFAULT_MODEL_NAME
    model_path: Optional[str] = field(default_factory=lambda: os.environ.get("SMARTSIGHT_MODEL_PATH") or None)
    model_load_timeout_s: float = 60.0
    input_size: int = 256
    tier_order: Tuple[PredictionSource, ...] = DEFAULT_TIER_ORDER
    offline_seed: Optional[int] = None

    def resolved_tier_order(self) -> Tuple[PredictionSource, ...]:
        """Configured order without duplicates, always ending in the offline tier."""
        order: List[PredictionSource] = []
        for source in self.tier_order:
            if source not in order and source != PredictionSource.OFFLINE_FALLBACK:
                order.append(source)
        order.append(PredictionSource.OFFLINE_FALLBACK)
        return tuple(order)


def parse_tier_order(text: str) -> Tuple[PredictionSource, ...]:
    """Parse a comma-separated tier list such as "local,remote,offline"."""
    aliases = {
        "remote": PredictionSource.REMOTE_SERVICE,
        "local": PredictionSource.LOCAL_MODEL,
        "offline": PredictionSource.OFFLINE_FALLBACK,
    }
    tiers = []
    for part in text.split(","):
        name = part.strip().lower()
        if not name:
            continue
        if name not in aliases:
            raise ValueError(f"Unknown tier: {name!r} (expected one of {', '.join(aliases)})")
        tiers.append(aliases[name])
    return tuple(tiers)


# --- Logging ---

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install a plain text handler on the root logger."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


# --- Platform-specific paths ---

def get_data_dir() -> Path:
    """Get the platform-specific application data directory."""
    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support" / "SmartSight"
    elif sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", Path.home())) / "SmartSight"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / "smartsight"
    base.mkdir(parents=True, exist_ok=True)
    return base


def get_models_dir() -> Path:
    """Get the directory for downloaded AI models."""
    models_dir = get_data_dir() / "models"
    models_dir.mkdir(parents=True, exist_ok=True)
    return models_dir


def describe_image_ref(image: Optional[ImageRef]) -> str:
    """Short printable form of an image reference, for logs and results."""
    if image is None:
        return ""
    if isinstance(image, (bytes, bytearray)):
        return f"<{len(image)} bytes>"
    text = os.fspath(image)
    if text.startswith("data:"):
        return text.split(",", 1)[0] + ",..."
    return text


def is_blank_image_ref(image: Optional[ImageRef]) -> bool:
    if image is None:
        return True
    if isinstance(image, (bytes, bytearray)):
        return len(image) == 0
    return not os.fspath(image).strip()


def normalize_probabilities(values: Iterable[float]) -> Tuple[float, ...]:
    """Scale non-negative values so they sum to 1."""
    values = tuple(float(v) for v in values)
    total = math.fsum(values)
    if total <= 0.0 or not math.isfinite(total):
        raise ValueError(f"Cannot normalize values with sum {total}")
    return tuple(v / total for v in values)
