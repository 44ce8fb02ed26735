"""Tests for the ONNX frame classifier and model acquisition."""

import asyncio
from types import SimpleNamespace

import httpx
import numpy as np
import pytest

from jutsu_engine.errors import ModelUnavailable, TransientBackendFault
from jutsu_engine.neural import (
    INPUT_SIZE,
    NEURAL_LABELS,
    ModelFetcher,
    NeuralFrameClassifier,
    default_mirrors,
)
from jutsu_engine.seals import NO_DETECTION, SealLabel

NUM_CLASSES = len(NEURAL_LABELS)


def prediction(objectness, class_id=0, prob=0.0):
    row = np.zeros(5 + NUM_CLASSES, dtype=np.float32)
    row[4] = objectness
    row[5 + class_id] = prob
    return row


def model_output(*rows):
    return np.stack(rows)[np.newaxis]


class FakeSession:
    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = 0

    def get_inputs(self):
        return [SimpleNamespace(name="images")]

    def run(self, names, feeds):
        self.calls += 1
        assert list(feeds) == ["images"]
        assert feeds["images"].shape == (1, 3, INPUT_SIZE, INPUT_SIZE)
        if self.error:
            raise self.error
        return [self.output]


def offline_fetcher():
    return ModelFetcher(mirrors=[])


def loaded_classifier(session, tmp_path):
    model = tmp_path / "seals.onnx"
    model.write_bytes(b"onnx")
    clf = NeuralFrameClassifier(
        model_path=model, fetcher=offline_fetcher(), session_factory=lambda payload: session
    )
    asyncio.run(clf.load_model())
    return clf


def frame(h=240, w=320):
    return np.zeros((h, w, 3), dtype=np.uint8)


class TestLabels:
    def test_alphabetical_order(self):
        values = [label.value for label in NEURAL_LABELS]
        assert values == sorted(values)
        assert len(values) == 12
        assert NEURAL_LABELS[0] == SealLabel.BIRD
        assert NEURAL_LABELS[-1] == SealLabel.TIGER


class TestDecode:
    def test_best_score_wins(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        out = model_output(
            prediction(0.9, 3, 0.8),
            prediction(0.5, 5, 0.9),
        )
        class_id, score = clf.decode(out)
        assert class_id == 3
        assert score == pytest.approx(0.72)

    def test_low_objectness_skipped(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        out = model_output(prediction(0.39, 7, 1.0), prediction(0.3, 2, 1.0))
        assert clf.decode(out) == (-1, -1.0)

    def test_empty_output(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        assert clf.decode(np.zeros(0, dtype=np.float32)) == (-1, -1.0)

    def test_global_max_across_rows(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        out = model_output(
            prediction(0.5, 0, 0.5),
            prediction(0.95, 11, 0.9),
            prediction(0.8, 6, 0.7),
        )
        class_id, score = clf.decode(out)
        assert class_id == 11
        assert score == pytest.approx(0.855)


class TestPreprocess:
    def test_shape_and_range(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        img = np.full((240, 320, 3), 255, dtype=np.uint8)
        tensor = clf.preprocess(img)
        assert tensor.shape == (1, 3, INPUT_SIZE, INPUT_SIZE)
        assert tensor.dtype == np.float32
        assert tensor.max() == pytest.approx(1.0)

    def test_mirrored(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        img = frame(100, 200)
        img[:, :100] = 255
        tensor = clf.preprocess(img)
        assert tensor[0, 0, 50, -1] == pytest.approx(1.0)
        assert tensor[0, 0, 50, 0] == pytest.approx(0.0)

    def test_channel_order(self):
        img = frame(64, 64)
        img[..., 0] = 255  # blue in OpenCV order
        bgr = NeuralFrameClassifier(fetcher=offline_fetcher()).preprocess(img)
        rgb = NeuralFrameClassifier(fetcher=offline_fetcher(), input_channel_order="rgb").preprocess(img)
        assert bgr[0, 0].mean() == pytest.approx(1.0)
        assert rgb[0, 2].mean() == pytest.approx(1.0)
        assert rgb[0, 0].mean() == pytest.approx(0.0)

    def test_rejects_grayscale(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        with pytest.raises(ValueError):
            clf.preprocess(np.zeros((64, 64), dtype=np.uint8))


class TestClassify:
    def test_before_load_returns_nothing(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher())
        assert clf.status == "offline"
        assert asyncio.run(clf.classify(frame())) == NO_DETECTION

    def test_confident_detection(self, tmp_path):
        session = FakeSession(model_output(prediction(0.9, 2, 0.8)))
        clf = loaded_classifier(session, tmp_path)
        assert clf.status == "ready"
        result = asyncio.run(clf.classify(frame()))
        assert result.label == SealLabel.DOG
        assert result.confidence == pytest.approx(0.72)

    def test_below_threshold(self, tmp_path):
        session = FakeSession(model_output(prediction(0.9, 2, 0.65)))
        clf = loaded_classifier(session, tmp_path)
        assert asyncio.run(clf.classify(frame())) == NO_DETECTION

    def test_inference_error_is_swallowed(self, tmp_path):
        session = FakeSession(error=RuntimeError("bad tensor"))
        clf = loaded_classifier(session, tmp_path)
        assert asyncio.run(clf.classify(frame())) == NO_DETECTION
        assert session.calls == 1

    def test_missing_frame(self, tmp_path):
        clf = loaded_classifier(FakeSession(), tmp_path)
        assert asyncio.run(clf.classify(None)) == NO_DETECTION

    def test_same_frame_same_result(self, tmp_path):
        session = FakeSession(model_output(prediction(0.2, 5, 0.9), prediction(0.95, 9, 0.9)))
        clf = loaded_classifier(session, tmp_path)
        img = frame()
        img[40:120, 60:200] = (30, 160, 220)

        first = asyncio.run(clf.classify(img))
        second = asyncio.run(clf.classify(img))
        assert first == second
        assert first.label == NEURAL_LABELS[9]
        assert session.calls == 2

    def test_inference_fault_is_transient(self, tmp_path):
        clf = loaded_classifier(FakeSession(error=RuntimeError("bad tensor")), tmp_path)
        with pytest.raises(TransientBackendFault):
            asyncio.run(clf._infer(frame()))


class TestLoadModel:
    def test_no_mirrors_fails(self):
        clf = NeuralFrameClassifier(fetcher=offline_fetcher(), session_factory=lambda p: FakeSession())
        with pytest.raises(ModelUnavailable):
            asyncio.run(clf.load_model())
        assert clf.status == "failed"
        assert "All model mirrors failed" in clf.last_error

    def test_rejected_payload(self, tmp_path):
        def factory(payload):
            raise RuntimeError("not an onnx graph")

        model = tmp_path / "broken.onnx"
        model.write_bytes(b"junk")
        clf = NeuralFrameClassifier(model_path=model, fetcher=offline_fetcher(), session_factory=factory)
        with pytest.raises(ModelUnavailable):
            asyncio.run(clf.load_model())
        assert clf.status == "failed"

    def test_retry_after_failure(self, tmp_path):
        model = tmp_path / "seals.onnx"
        clf = NeuralFrameClassifier(
            model_path=model, fetcher=offline_fetcher(), session_factory=lambda p: FakeSession()
        )
        with pytest.raises(ModelUnavailable):
            asyncio.run(clf.load_model())

        model.write_bytes(b"onnx")
        asyncio.run(clf.load_model())
        assert clf.loaded
        assert clf.last_error is None


class TestModelFetcher:
    def make_client(self, responses):
        def handler(request):
            return responses[request.url.host]
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_skips_bad_mirrors(self):
        big = b"\x08" * 200_001
        client = self.make_client({
            "a.example": httpx.Response(503),
            "b.example": httpx.Response(200, content=b"<html>quota exceeded</html>"),
            "c.example": httpx.Response(200, content=big),
        })
        fetcher = ModelFetcher(
            mirrors=["https://a.example/m", "https://b.example/m", "https://c.example/m"],
            client=client,
        )
        assert asyncio.run(fetcher.fetch()) == big

    def test_all_mirrors_fail(self):
        client = self.make_client({
            "a.example": httpx.Response(404),
            "b.example": httpx.Response(200, content=b"tiny"),
        })
        fetcher = ModelFetcher(mirrors=["https://a.example/m", "https://b.example/m"], client=client)
        with pytest.raises(ModelUnavailable, match="payload too small"):
            asyncio.run(fetcher.fetch())

    def test_transport_error_skipped(self):
        def handler(request):
            if request.url.host == "down.example":
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(200, content=b"\x01" * 300_000)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        fetcher = ModelFetcher(mirrors=["https://down.example/m", "https://up.example/m"], client=client)
        assert len(asyncio.run(fetcher.fetch())) == 300_000

    def test_download_writes_file(self, tmp_path):
        client = self.make_client({"a.example": httpx.Response(200, content=b"\x02" * 250_000)})
        fetcher = ModelFetcher(mirrors=["https://a.example/m"], client=client)
        path = asyncio.run(fetcher.download(tmp_path / "models" / "seals.onnx"))
        assert path.stat().st_size == 250_000

    def test_default_mirrors(self):
        mirrors = default_mirrors()
        assert len(mirrors) == 4
        assert "18HvHluoCAkzRqNwTDkOh3JgP0jBlaT8x" in mirrors[0]
        assert all("18HvHluoCAkzRqNwTDkOh3JgP0jBlaT8x" in m for m in mirrors)
