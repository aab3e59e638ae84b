"""Shared test fixtures for SmartSight."""

import io
import json
import tempfile
from pathlib import Path
from urllib.parse import urlparse

import numpy as np
import pytest
import requests
from PIL import Image


VALID_PAYLOAD = {
    "prediction": "Glaucoma",
    "confidence": 0.9,
    "confidence_level": "High",
    "all_probabilities": {
        "Cataract": 0.04,
        "Diabetic Retinopathy": 0.03,
        "Glaucoma": 0.9,
        "Normal": 0.03,
    },
}


class FakeResponse:
    """Just enough of requests.Response for the remote client."""

    def __init__(self, status_code=200, json_body=None, text=None):
        self.status_code = status_code
        self._json_body = json_body
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if not 200 <= self.status_code < 300:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for requests.Session; records calls.

    Each route maps to a FakeResponse or an exception instance to raise.
    """

    def __init__(self, health=None, predict=None, info=None):
        self.routes = {
            "/health": health if health is not None else FakeResponse(200, {"status": "ok"}),
            "/predict": predict if predict is not None else FakeResponse(200, VALID_PAYLOAD),
            "/": info if info is not None else FakeResponse(200, {"name": "smartsight"}),
        }
        self.calls = []
        self.closed = False

    def _dispatch(self, method, url, **kwargs):
        path = urlparse(url).path or "/"
        self.calls.append((method, path, kwargs))
        outcome = self.routes[path]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)

    def close(self):
        self.closed = True

    def paths(self, method=None):
        return [path for m, path, _ in self.calls if method is None or m == method]


class FixedLogitsModel:
    """Callable model returning the same logits for any input."""

    def __init__(self, logits):
        self.logits = logits
        self.calls = 0

    def __call__(self, tensor):
        import torch
        self.calls += 1
        return torch.tensor([self.logits], dtype=torch.float32)


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def sample_eye_image(tmp_dir):
    """Create a sample 320x240 RGB image (simulates an eye photo)."""
    img = Image.fromarray(np.random.randint(0, 255, (240, 320, 3), dtype=np.uint8))
    path = tmp_dir / "eye.png"
    img.save(path)
    return str(path)


@pytest.fixture
def sample_eye_jpeg_bytes():
    img = Image.fromarray(np.random.randint(0, 255, (64, 64, 3), dtype=np.uint8))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture
def model_file(tmp_dir):
    """Placeholder model artifact; pair it with a fake loader."""
    path = tmp_dir / "model.pt"
    path.write_bytes(b"not a real model")
    return path


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def valid_payload():
    return json.loads(json.dumps(VALID_PAYLOAD))
