"""Eye image loading, preprocessing, and normalization."""

import base64
import binascii
import io
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from PIL import Image

from core.errors import PreprocessingError
from core.utils import ImageRef

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
}


@dataclass(frozen=True)
class EyeImage:
    """Raw bytes of a captured image plus what an upload needs to name it."""
    data: bytes
    filename: str = "photo.jpg"
    mime_type: str = "image/jpeg"


def _sniff_mime(data: bytes) -> Tuple[str, str]:
    if data.startswith(b"\x89PNG"):
        return "photo.png", "image/png"
    return "photo.jpg", "image/jpeg"


class ImagePreprocessor:
    """Turns a captured eye image into the tensor the local classifier expects."""

    def __init__(
        self,
        input_size: int = 256,
        mean: Sequence[float] = IMAGENET_MEAN,
        std: Sequence[float] = IMAGENET_STD,
    ):
        self.input_size = input_size
        self.mean = tuple(mean)
        self.std = tuple(std)

    @staticmethod
    def read_image(image: ImageRef) -> EyeImage:
        """Resolve a path, file:// URI, data: URI or raw bytes into image bytes."""
        if isinstance(image, (bytes, bytearray)):
            if not image:
                raise PreprocessingError("Image data is empty")
            filename, mime = _sniff_mime(bytes(image))
            return EyeImage(bytes(image), filename, mime)

        ref = os.fspath(image)
        if ref.startswith("data:"):
            return ImagePreprocessor._read_data_uri(ref)

        if ref.startswith("file://"):
            ref = url2pathname(unquote(urlparse(ref).path))

        path = Path(ref)
        try:
            if not path.is_file():
                raise PreprocessingError(f"Image file not found: {ref}")
            data = path.read_bytes()
        except OSError as exc:
            # e.g. ENAMETOOLONG or EACCES from the stat itself
            raise PreprocessingError(f"Cannot read image file {ref}: {exc}") from exc
        if not data:
            raise PreprocessingError(f"Image file is empty: {ref}")

        mime = _MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
        return EyeImage(data, path.name, mime)

    @staticmethod
    def _read_data_uri(uri: str) -> EyeImage:
        header, _, payload = uri.partition(",")
        if not payload or ";base64" not in header:
            raise PreprocessingError("Unsupported data URI, expected base64 image data")
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise PreprocessingError(f"Invalid base64 image data: {exc}") from exc
        if not data:
            raise PreprocessingError("Image data is empty")
        mime = header[len("data:"):].split(";", 1)[0] or "image/jpeg"
        extension = mime.split("/")[-1].replace("jpeg", "jpg")
        return EyeImage(data, f"photo.{extension}", mime)

    @staticmethod
    def decode(image: ImageRef) -> Image.Image:
        """Decode an image reference into an RGB PIL image."""
        eye_image = ImagePreprocessor.read_image(image)
        try:
            img = Image.open(io.BytesIO(eye_image.data))
            img.load()
            return img.convert("RGB")
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise PreprocessingError(f"Cannot decode image {eye_image.filename}: {exc}") from exc

    def preprocess(self, image: ImageRef) -> "torch.Tensor":
        """Preprocess an eye photo for the local classifier.

        Returns tensor of shape (1, 3, input_size, input_size) with ImageNet
        normalization, channel-first.
        """
        from torchvision import transforms

        img = self.decode(image)

        transform = transforms.Compose([
            transforms.Resize(
                (self.input_size, self.input_size),
                interpolation=transforms.InterpolationMode.BILINEAR,
            ),
            transforms.ToTensor(),
            transforms.Normalize(mean=self.mean, std=self.std),
        ])

        try:
            tensor = transform(img)
        except (OSError, ValueError, RuntimeError) as exc:
            raise PreprocessingError(f"Cannot resize image: {exc}") from exc
        return tensor.unsqueeze(0)  # Add batch dimension
