"""Model registry and local storage of the on-device classifier."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from core.utils import ClassLabel, DEFAULT_MODEL_NAME, get_models_dir

MODEL_FILENAME = "model.pt"


@dataclass
class ModelInfo:
    """Metadata about an available AI model."""
    name: str
    display_name: str
    version: str
    input_size: int
    size_mb: float
    description: str
    classes: List[str] = field(default_factory=lambda: [label.value for label in ClassLabel])
    supported_formats: List[str] = field(default_factory=lambda: ["jpg", "jpeg", "png"])


MODEL_REGISTRY: List[ModelInfo] = [
    ModelInfo(
        name=DEFAULT_MODEL_NAME,
        display_name="EfficientNet-B2 (Eye Disease)",
        version="EfficientNet-B2-v1.0",
        input_size=256,
        size_mb=31.0,
        description=(
            "Cataract, diabetic retinopathy and glaucoma screening from eye photos. "
            "TorchScript export taking 1x3x256x256 input and returning 4 logits."
        ),
    ),
]


class ModelManager:
    """Locates model artifacts under the platform models directory."""

    def __init__(self, models_dir: Optional[Path] = None):
        self._models_dir = Path(models_dir) if models_dir is not None else get_models_dir()

    def get_model_info(self, model_name: str) -> Optional[ModelInfo]:
        """Get info for a specific model."""
        for model in MODEL_REGISTRY:
            if model.name == model_name:
                return model
        return None

    def get_model_path(self, model_name: str) -> Path:
        """Get the local path for a model's TorchScript file."""
        return self._models_dir / model_name / MODEL_FILENAME

