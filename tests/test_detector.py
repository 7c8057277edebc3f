"""
Tests for the detector module.
"""

from pathlib import Path

import pytest

from conftest import StubRuntime, encode, square_image
from holdseg.config import AppConfig, ModelConfig
from holdseg.detection import PredictionSet
from holdseg.detector import Detector
from holdseg.errors import DecodeError, InputError, ModelError
from holdseg.geometry import polygon_bounds

# Skip integration tests if the model file is missing
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MODEL_EXISTS = (_PROJECT_ROOT / "models/model.onnx").exists()


@pytest.fixture
def detector():
    config = AppConfig()
    return Detector(config=config, runtime=StubRuntime(config.model))


def test_single_square_hold(detector, square_png):
    """A 100 px square centred in a 1024 px image yields one outline around it."""
    predictions = detector.detect(square_png)

    assert isinstance(predictions, PredictionSet)
    assert (predictions.image_width, predictions.image_height) == (1024, 1024)
    assert len(predictions) == 1

    polygon = predictions.polygons[0]
    assert polygon.confidence == pytest.approx(0.95)
    x1, y1, x2, y2 = polygon_bounds(polygon.to_array())
    assert (x1 + x2) / 2 == pytest.approx(512, abs=4)
    assert (y1 + y2) / 2 == pytest.approx(512, abs=4)
    assert 40 <= x2 - x1 <= 120
    assert 40 <= y2 - y1 <= 120
    for x, y in polygon.points:
        assert 0 <= x <= 1024 and 0 <= y <= 1024


def test_response_shape(detector, square_png):
    payload = detector.detect(square_png).to_dict()
    assert set(payload) == {"predictions", "imageSize"}
    assert payload["imageSize"] == {"width": 1024, "height": 1024}
    flat = payload["predictions"][0]
    assert len(flat) % 2 == 0 and len(flat) >= 8


def test_blank_image_has_no_holds(detector):
    predictions = detector.detect(encode(square_image(side=0)))
    assert len(predictions) == 0


def test_non_square_image(detector):
    predictions = detector.detect(encode(square_image(size=(1600, 900), side=120)))

    assert (predictions.image_width, predictions.image_height) == (1600, 900)
    assert len(predictions) == 1
    x1, y1, x2, y2 = polygon_bounds(predictions.polygons[0].to_array())
    assert (x1 + x2) / 2 == pytest.approx(800, abs=8)
    assert (y1 + y2) / 2 == pytest.approx(450, abs=8)


def test_detector_input_validation(detector):
    """Test strict input validation."""
    with pytest.raises(InputError):
        detector.detect(b"")

    with pytest.raises(InputError):
        detector.detect("not bytes")

    with pytest.raises(DecodeError):
        detector.detect(b"\x89PNG\r\n\x1a\n garbage")


def test_missing_model_file(tmp_path):
    config = AppConfig(model=ModelConfig(model_path=str(tmp_path / "missing.onnx")))
    with pytest.raises(ModelError):
        Detector(config=config)


@pytest.mark.skipif(not _MODEL_EXISTS, reason="Model file not found")
def test_detector_integration_smoke(square_png):
    """Smoke test: detector loads the real model and runs on a dummy image."""
    detector = Detector()

    predictions = detector.detect(square_png)

    assert isinstance(predictions, PredictionSet)
    for polygon in predictions.polygons:
        assert 0.0 <= polygon.confidence <= 1.0
