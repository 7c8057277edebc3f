"""
Shared fixtures and a stub model runtime.

The stub stands in for the ONNX model. It is importable by module name
(``conftest``), so factories defined here can be pickled and handed to
spawned worker processes.

Stub behavior, keyed on the top-left input pixel:
    pure red    → the worker process exits abruptly (simulated crash)
    pure blue   → the call sleeps for a minute (simulated hang)
    otherwise   → one detection around the bright (> 0.9) region, with a
                  prototype mask covering exactly that region
"""

import io
import math
import os
import time
from dataclasses import replace

import numpy as np
import pytest
from PIL import Image

from holdseg.config import AppConfig, ModelConfig, PoolConfig
from holdseg.errors import ModelError
from holdseg.model_loader import ModelOutputs, ModelRuntime

NUM_ANCHORS = 8
STUB_ANCHOR = 3
STUB_CONFIDENCE = 0.95

RED = (255, 0, 0)
BLUE = (0, 0, 255)


class StubRuntime(ModelRuntime):
    """Deterministic fake segmentation model."""

    def __init__(self, config: ModelConfig, delay: float = 0.0) -> None:
        self._config = config
        self._delay = delay

    def run(self, tensor: np.ndarray) -> ModelOutputs:
        corner = tensor[0, :, 0, 0]
        if corner.shape[0] == 3 and corner[0] > 0.99 and corner[1] < 0.01 and corner[2] < 0.01:
            os._exit(3)
        if corner.shape[0] == 3 and corner[2] > 0.99 and corner[0] < 0.01 and corner[1] < 0.01:
            time.sleep(60)

        if self._delay:
            time.sleep(self._delay)

        size = self._config.input_size
        mask_size = self._config.mask_size
        k = self._config.num_mask_coeffs

        detections = np.zeros((1, 5 + k, NUM_ANCHORS), dtype=np.float32)
        prototypes = np.full((1, k, mask_size, mask_size), -1.0, dtype=np.float32)

        bright = tensor[0].mean(axis=0) > 0.9
        if bright.any():
            rows, cols = np.nonzero(bright)
            x1, x2 = float(cols.min()), float(cols.max() + 1)
            y1, y2 = float(rows.min()), float(rows.max() + 1)
            detections[0, :4, STUB_ANCHOR] = [(x1 + x2) / 2, (y1 + y2) / 2, x2 - x1, y2 - y1]
            detections[0, 4, STUB_ANCHOR] = STUB_CONFIDENCE
            detections[0, 5, STUB_ANCHOR] = 1.0

            scale = mask_size / size
            prototypes[
                0, 0,
                int(y1 * scale):int(math.ceil(y2 * scale)),
                int(x1 * scale):int(math.ceil(x2 * scale)),
            ] = 1.0

        return ModelOutputs(detections=detections, prototypes=prototypes)


def stub_runtime(config: ModelConfig) -> ModelRuntime:
    return StubRuntime(config)


def slow_stub_runtime(config: ModelConfig) -> ModelRuntime:
    return StubRuntime(config, delay=0.4)


def slow_loading_runtime(config: ModelConfig) -> ModelRuntime:
    time.sleep(4.0)
    return StubRuntime(config)


def broken_runtime(config: ModelConfig) -> ModelRuntime:
    raise ModelError(f"Model file not found: {config.model_path}")


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def square_image(size=(1024, 1024), side=100, background=40, foreground=255, corner=None) -> np.ndarray:
    """RGB image with one bright axis-aligned square in the middle."""
    width, height = size
    img = np.full((height, width, 3), background, dtype=np.uint8)
    left = (width - side) // 2
    top = (height - side) // 2
    img[top:top + side, left:left + side] = foreground
    if corner is not None:
        img[0, 0] = corner
    return img


def encode(img: np.ndarray, fmt: str = "PNG", **params) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(img).save(buf, format=fmt, **params)
    return buf.getvalue()


@pytest.fixture
def square_png() -> bytes:
    return encode(square_image())


@pytest.fixture(scope="session")
def noisy_png() -> bytes:
    """A photo-sized payload (several MB) far larger than a pipe buffer.

    The noise stays below the bright threshold, so the stub still sees
    exactly one hold.
    """
    img = np.random.default_rng(0).integers(0, 150, size=(1024, 1024, 3), dtype=np.uint8)
    side = 100
    top = (1024 - side) // 2
    img[top:top + side, top:top + side] = 255
    return encode(img)


@pytest.fixture
def crash_png() -> bytes:
    return encode(square_image(corner=RED))


@pytest.fixture
def hang_png() -> bytes:
    return encode(square_image(corner=BLUE))


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def pool_config() -> AppConfig:
    """Small pool with fast coordinator wake-ups for tests."""
    return replace(
        AppConfig(),
        pool=PoolConfig(max_workers=2, job_timeout=60.0, job_ttl=3600.0, poll_interval=0.02),
    )
