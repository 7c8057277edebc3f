"""
Model loading for the segmentation pipeline.

Responsibility:
    Load the ONNX segmentation model from disk, configure the execution
    provider, and expose it behind a small runtime interface that turns
    an input tensor into the two raw outputs the decoder needs.

Non-goals:
    - No preprocessing or post-processing.
    - No automatic model downloading.
    - No retries: a model that fails to load fails every job loudly.

Failure behavior:
    - Missing, oversized or corrupt model files raise ModelError with
      the exact path.
    - A model that does not expose the expected named outputs raises
      ModelError at load time, not at first use.
    - Any failure inside a run (including MemoryError) raises ModelError.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

import numpy as np

from holdseg.config import ModelConfig, get_project_root
from holdseg.errors import ModelError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputSchema:
    """The named outputs a segmentation model must expose.

    Attributes:
        version: Schema identifier, logged at load time.
        detection_output: Raw detections, [1, 4 + 1 + K, A].
        prototype_output: Prototype masks, [1, K, M, M].
    """

    version: str
    detection_output: str
    prototype_output: str

    @classmethod
    def from_config(cls, config: ModelConfig) -> "OutputSchema":
        return cls(
            version="seg-v1",
            detection_output=config.detection_output,
            prototype_output=config.prototype_output,
        )

    @property
    def names(self) -> List[str]:
        return [self.detection_output, self.prototype_output]


@dataclass(frozen=True)
class ModelOutputs:
    """Raw tensors from one inference call. Read-only after creation."""

    detections: np.ndarray
    prototypes: np.ndarray


class ModelRuntime:
    """Opaque boundary to a loaded detection model.

    Implementations load their model once in ``__init__`` and are then
    called once per image. They are owned by a single worker and never
    shared.
    """

    def run(self, tensor: np.ndarray) -> ModelOutputs:
        raise NotImplementedError


class OnnxModelRuntime(ModelRuntime):
    """ModelRuntime backed by an onnxruntime InferenceSession."""

    def __init__(self, config: ModelConfig) -> None:
        # onnxruntime is heavy; import it in the worker that needs it.
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise ModelError(
                "onnxruntime is required to run the model. Install with `pip install onnxruntime`."
            ) from e

        self._schema = OutputSchema.from_config(config)
        path = resolve_model_path(config)
        _check_model_file(path, config.max_model_bytes)

        providers = _providers_for(config.backend, ort.get_available_providers())
        logger.info("Loading model: path=%s, providers=%s", path, providers)
        try:
            self._session = ort.InferenceSession(str(path), providers=providers)
        except Exception as e:
            raise ModelError(f"Failed to load model from {path}: {e}") from e

        available = {o.name for o in self._session.get_outputs()}
        missing = [name for name in self._schema.names if name not in available]
        if missing:
            raise ModelError(
                f"Model at {path} is missing required outputs {missing} "
                f"(schema {self._schema.version}); it exposes {sorted(available)}."
            )

        self._input_name = self._session.get_inputs()[0].name
        logger.info(
            "Model loaded successfully (input=%s, schema=%s).",
            self._input_name,
            self._schema.version,
        )

    def run(self, tensor: np.ndarray) -> ModelOutputs:
        try:
            detections, prototypes = self._session.run(
                self._schema.names,
                {self._input_name: tensor.astype(np.float32, copy=False)},
            )
        except MemoryError as e:
            raise ModelError("Out of memory during inference.") from e
        except Exception as e:
            raise ModelError(f"Inference failed: {e}") from e

        return ModelOutputs(
            detections=np.asarray(detections),
            prototypes=np.asarray(prototypes),
        )


def resolve_model_path(config: ModelConfig) -> Path:
    """Resolve ``config.model_path`` against the project root."""
    path = Path(config.model_path)
    if not path.is_absolute():
        path = get_project_root() / path
    return path


def _check_model_file(path: Path, max_bytes: int) -> None:
    # Fail fast with actionable messages
    if not path.is_file():
        raise ModelError(
            f"Model file not found.\n"
            f"  Expected: {path}\n"
            f"  Provide the file or update 'model.model_path' in your config."
        )

    size = path.stat().st_size
    logger.debug("Model file size: %d bytes", size)
    if max_bytes and size > max_bytes:
        raise ModelError(
            f"Model file is too large: {size} bytes (limit {max_bytes}).\n"
            f"  Path: {path}"
        )


def _providers_for(backend: str, available: List[str]) -> List[str]:
    if backend == "cuda":
        if "CUDAExecutionProvider" not in available:
            raise ModelError(
                "CUDA backend requested but onnxruntime has no CUDAExecutionProvider. "
                "Install onnxruntime-gpu or set model.backend to 'cpu'."
            )
        logger.info("Using CUDA execution provider.")
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]

    logger.info("Using CPU execution provider.")
    return ["CPUExecutionProvider"]


def load_model(config: ModelConfig) -> ModelRuntime:
    """Load and configure the segmentation model.

    Args:
        config: ModelConfig containing the file path and backend preference.

    Returns:
        A ModelRuntime ready for inference.

    Raises:
        ModelError: If the model cannot be loaded or lacks required outputs.
    """
    return OnnxModelRuntime(config)
