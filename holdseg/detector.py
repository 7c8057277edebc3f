"""
Detector: the in-process segmentation pipeline.

This module wires preprocessing, the model runtime and postprocessing
into one call. Each worker process owns exactly one Detector; callers
outside the package go through JobManager instead.

Public contract:
    Detector.detect(image_bytes: bytes) -> PredictionSet

Constraints:
    - The model is loaded once, in the constructor.
    - Thread-safety is not guaranteed (one worker, one task at a time).

Non-goals:
    - No job bookkeeping, queuing or concurrency.
    - No visualization or output writing.
"""

import logging
from typing import Optional

from holdseg.config import AppConfig, load_config
from holdseg.detection import PredictionSet
from holdseg.model_loader import ModelRuntime, load_model
from holdseg.postprocessor import postprocess
from holdseg.preprocessor import preprocess

logger = logging.getLogger(__name__)


class Detector:
    """Hold segmentation over one image at a time.

    Usage:
        detector = Detector()                        # Uses safe defaults
        detector = Detector(config=my_config)        # Custom config
        detector = Detector(runtime=my_runtime)      # Injected model
        predictions = detector.detect(image_bytes)
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        runtime: Optional[ModelRuntime] = None,
    ) -> None:
        """Initialize the detector and load the model.

        Args:
            config: Application configuration. If None, safe defaults
                    are used (no config file required).
            runtime: Preloaded model runtime. If None, the ONNX model
                     named by ``config.model`` is loaded.

        Raises:
            ModelError: If the model cannot be loaded.
        """
        if config is None:
            config = load_config()

        self._config = config
        self._runtime = runtime if runtime is not None else load_model(config.model)

        logger.info(
            "Detector initialized (input_size=%d, confidence_threshold=%.2f, iou_threshold=%.2f)",
            config.model.input_size,
            config.detection.confidence_threshold,
            config.detection.iou_threshold,
        )

    def detect(self, image_bytes: bytes) -> PredictionSet:
        """Find hold outlines in one uploaded image.

        Args:
            image_bytes: The raw upload (JPEG, PNG, HEIC, ...).

        Returns:
            A PredictionSet with polygons in original-image pixels,
            highest confidence first.

        Raises:
            InputError: If the payload is empty or not bytes.
            DecodeError: If the payload is not a decodable image.
            ModelError: If inference fails or returns malformed tensors.
        """
        # Preprocess: bytes → tensor + letterbox
        image = preprocess(image_bytes, self._config.model, self._config.preprocess)

        # Inference
        outputs = self._runtime.run(image.tensor)

        # Postprocess: raw outputs → polygons
        polygons = postprocess(outputs, image.letterbox, self._config)

        return PredictionSet(
            polygons=tuple(polygons),
            image_width=image.original_width,
            image_height=image.original_height,
        )

    @property
    def config(self) -> AppConfig:
        """Return the active configuration (read-only)."""
        return self._config
