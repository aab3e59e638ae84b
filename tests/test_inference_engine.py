"""Tests for core.inference_engine module."""

import threading
import time

import numpy as np
import pytest

from conftest import FixedLogitsModel
from core.errors import InferenceError, ModelLoadError
from core.image_preprocessor import ImagePreprocessor
from core.inference_engine import (
    LocalInferenceEngine,
    ModelState,
    load_torchscript_model,
    softmax,
)
from core.outcome_classifier import classify
from core.utils import ClassLabel, ConfidenceTier, UrgencyBucket

LOGIT_VECTORS = [
    [2.0, 1.0, 0.1, 0.1],
    [0.0, 0.0, 0.0, 0.0],
    [-5.0, 3.2, 7.7, -0.4],
    [1000.0, 999.0, 998.0, -1000.0],
    [-1e4, -1e4 + 1, -1e4 + 2, -1e4 + 3],
]


def dummy_tensor():
    import torch
    return torch.zeros((1, 3, 8, 8))


def wait_for_state(engine, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while engine.state != state and time.monotonic() < deadline:
        time.sleep(0.01)


def engine_with(model_file, logits, **kwargs):
    model = FixedLogitsModel(logits)
    return LocalInferenceEngine(model_file, loader=lambda path: model, **kwargs), model


class TestSoftmax:
    @pytest.mark.parametrize("logits", LOGIT_VECTORS)
    def test_sums_to_one(self, logits):
        p = softmax(logits)
        assert abs(p.sum() - 1.0) < 1e-6
        assert np.all(p >= 0)

    @pytest.mark.parametrize("logits", LOGIT_VECTORS)
    @pytest.mark.parametrize("shift", [-50.0, 3.5, 700.0])
    def test_shift_invariant(self, logits, shift):
        shifted = [z + shift for z in logits]
        assert np.allclose(softmax(logits), softmax(shifted), atol=1e-9)

    def test_known_values(self):
        p = softmax([2.0, 1.0, 0.1, 0.1])
        assert p[0] == pytest.approx(0.5999, abs=1e-3)
        assert p[1] == pytest.approx(0.2207, abs=1e-3)
        assert p[2] == pytest.approx(p[3])

    def test_empty(self):
        with pytest.raises(ValueError):
            softmax([])


class TestLoading:
    def test_initial_state(self, model_file):
        engine, _ = engine_with(model_file, [1, 0, 0, 0])
        assert engine.state == ModelState.UNLOADED
        assert not engine.status().is_loaded

    def test_load(self, model_file):
        engine, _ = engine_with(model_file, [1, 0, 0, 0])
        engine.ensure_loaded()
        status = engine.status()
        assert status.state == ModelState.READY
        assert status.is_ready and status.is_loaded and not status.is_loading

    def test_load_once(self, model_file):
        calls = []

        def loader(path):
            calls.append(path)
            return FixedLogitsModel([1, 0, 0, 0])

        engine = LocalInferenceEngine(model_file, loader=loader)
        engine.ensure_loaded()
        engine.ensure_loaded()
        assert len(calls) == 1

    def test_missing_file(self, tmp_dir):
        engine = LocalInferenceEngine(tmp_dir / "missing.pt")
        with pytest.raises(ModelLoadError):
            engine.ensure_loaded()
        assert engine.state == ModelState.LOAD_FAILED
        assert "not found" in engine.status().error

    def test_no_model_configured(self):
        engine = LocalInferenceEngine(None)
        with pytest.raises(ModelLoadError):
            engine.ensure_loaded()

    def test_corrupt_artifact(self, model_file):
        engine = LocalInferenceEngine(model_file)
        with pytest.raises(ModelLoadError):
            engine.ensure_loaded()
        assert engine.state == ModelState.LOAD_FAILED

    def test_retry_after_failure(self, tmp_dir):
        path = tmp_dir / "model.pt"
        engine = LocalInferenceEngine(path, loader=lambda p: FixedLogitsModel([1, 0, 0, 0]))
        with pytest.raises(ModelLoadError):
            engine.ensure_loaded()
        path.write_bytes(b"weights")
        engine.ensure_loaded()
        assert engine.state == ModelState.READY

    def test_concurrent_callers_share_one_load(self, model_file):
        entered = threading.Event()
        gate = threading.Event()
        calls = []

        def slow_loader(path):
            calls.append(path)
            entered.set()
            gate.wait(5)
            return FixedLogitsModel([1, 0, 0, 0])

        engine = LocalInferenceEngine(model_file, loader=slow_loader)
        errors = []

        def worker():
            try:
                engine.ensure_loaded()
            except ModelLoadError as e:
                errors.append(e)

        first = threading.Thread(target=worker)
        first.start()
        assert entered.wait(5)
        assert engine.status().is_loading

        others = [threading.Thread(target=worker) for _ in range(4)]
        for t in others:
            t.start()
        time.sleep(0.2)
        gate.set()
        for t in [first] + others:
            t.join(5)

        assert errors == []
        assert len(calls) == 1
        assert engine.state == ModelState.READY

    def test_concurrent_callers_share_failure(self, model_file):
        entered = threading.Event()
        gate = threading.Event()

        def failing_loader(path):
            entered.set()
            gate.wait(5)
            raise RuntimeError("corrupt weights")

        engine = LocalInferenceEngine(model_file, loader=failing_loader)
        errors = []

        def worker():
            try:
                engine.ensure_loaded()
            except ModelLoadError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        threads[0].start()
        assert entered.wait(5)
        for t in threads[1:]:
            t.start()
        time.sleep(0.2)
        gate.set()
        for t in threads:
            t.join(5)

        assert len(errors) == 3
        assert all("corrupt weights" in str(e) for e in errors)
        assert engine.state == ModelState.LOAD_FAILED

    def test_waiter_times_out(self, model_file):
        entered = threading.Event()
        gate = threading.Event()

        def slow_loader(path):
            entered.set()
            gate.wait(5)
            return FixedLogitsModel([1, 0, 0, 0])

        engine = LocalInferenceEngine(model_file, loader=slow_loader, load_timeout=0.05)

        def owner():
            try:
                engine.ensure_loaded()
            except ModelLoadError:
                pass

        first = threading.Thread(target=owner)
        first.start()
        assert entered.wait(5)
        try:
            with pytest.raises(ModelLoadError):
                engine.ensure_loaded()
        finally:
            gate.set()
            first.join(5)
        wait_for_state(engine, ModelState.READY)
        assert engine.state == ModelState.READY

    def test_starting_caller_times_out(self, model_file):
        gate = threading.Event()
        calls = []

        def hung_loader(path):
            calls.append(path)
            gate.wait(5)
            return FixedLogitsModel([1, 0, 0, 0])

        engine = LocalInferenceEngine(model_file, loader=hung_loader, load_timeout=0.05)
        try:
            with pytest.raises(ModelLoadError, match="Timed out"):
                engine.ensure_loaded()
            assert engine.status().is_loading
        finally:
            gate.set()

        wait_for_state(engine, ModelState.READY)
        assert engine.state == ModelState.READY
        engine.ensure_loaded()
        assert len(calls) == 1


class TestInference:
    def test_reference_logits(self, model_file):
        engine, model = engine_with(model_file, [2.0, 1.0, 0.1, 0.1])
        engine.ensure_loaded()
        probs = engine.infer(dummy_tensor())
        label, confidence = probs.top()
        assert label == ClassLabel.CATARACT
        assert confidence == pytest.approx(0.5999, abs=1e-3)
        assert classify(label, confidence) == (ConfidenceTier.LOW, UrgencyBucket.MONITOR)
        assert model.calls == 1

    def test_requires_load(self, model_file):
        engine, _ = engine_with(model_file, [1, 0, 0, 0])
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())

    def test_wrong_length(self, model_file):
        engine, _ = engine_with(model_file, [1.0, 2.0, 3.0])
        engine.ensure_loaded()
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())

    def test_nan(self, model_file):
        engine, _ = engine_with(model_file, [float("nan"), 1.0, 0.0, 0.0])
        engine.ensure_loaded()
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())

    def test_all_zero(self, model_file):
        engine, _ = engine_with(model_file, [0.0, 0.0, 0.0, 0.0])
        engine.ensure_loaded()
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())

    def test_forward_error(self, model_file):
        def broken(tensor):
            raise RuntimeError("shape mismatch")

        engine = LocalInferenceEngine(model_file, loader=lambda p: broken)
        engine.ensure_loaded()
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())

    def test_release(self, model_file):
        engine, _ = engine_with(model_file, [1, 0, 0, 0])
        engine.ensure_loaded()
        engine.release()
        assert engine.state == ModelState.UNLOADED
        with pytest.raises(InferenceError):
            engine.infer(dummy_tensor())
        engine.ensure_loaded()
        assert engine.state == ModelState.READY


class TestTorchScriptModel:
    def test_load_and_infer(self, tmp_dir, sample_eye_image):
        torch = pytest.importorskip("torch")
        net = torch.nn.Sequential(
            torch.nn.AdaptiveAvgPool2d(1),
            torch.nn.Flatten(),
            torch.nn.Linear(3, 4),
        )
        net.eval()
        path = tmp_dir / "model.pt"
        traced = torch.jit.trace(net, torch.zeros((1, 3, 32, 32)))
        torch.jit.save(traced, str(path))

        model = load_torchscript_model(path)
        engine = LocalInferenceEngine(path)
        engine.ensure_loaded()
        tensor = ImagePreprocessor(input_size=32).preprocess(sample_eye_image)
        probs = engine.infer(tensor)

        assert abs(sum(probs) - 1.0) < 1e-6
        with torch.inference_mode():
            expected = torch.softmax(model(tensor), dim=1)[0].numpy()
        assert np.allclose(probs.values, expected, atol=1e-5)
