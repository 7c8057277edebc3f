"""
Configuration management for the hold segmentation service.

Provides a layered configuration system with the following precedence
(highest to lowest):

    CLI arguments > Environment variables > YAML config file > Defaults

Design constraints:
    - The system MUST run with zero configuration (safe defaults only).
    - Missing or invalid values fail early and loudly.
    - No inference logic, I/O, or model loading belongs here.
    - Every config object is frozen and picklable, so it can be handed
      to worker processes as-is.

Non-goals:
    - No dynamic reloading.
    - No database-backed or remote configuration.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root resolution
# ---------------------------------------------------------------------------
# Resolved relative to this file's location: holdseg/config.py → repo root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_project_root() -> Path:
    """Return the resolved project root directory."""
    return _PROJECT_ROOT


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelConfig:
    """Model-related configuration.

    Attributes:
        model_path: Path to the .onnx segmentation model (relative to project root).
        backend: Compute backend, 'cpu' or 'cuda'.
        input_size: Side length S of the square model input.
        channels: Input channel count (3 = RGB, 1 = grayscale).
        mask_size: Side length M of the prototype mask grid.
        num_mask_coeffs: Number of prototype masks / coefficients per anchor.
        detection_output: Name of the raw detection output tensor.
        prototype_output: Name of the prototype mask output tensor.
        max_model_bytes: Refuse model files larger than this. 0 disables the check.
    """

    model_path: str = "models/model.onnx"
    backend: str = "cpu"
    input_size: int = 1024
    channels: int = 3
    mask_size: int = 256
    num_mask_coeffs: int = 32
    detection_output: str = "output0"
    prototype_output: str = "output1"
    max_model_bytes: int = 0


@dataclass(frozen=True)
class PreprocessConfig:
    """Image decoding and letterbox parameters.

    Attributes:
        pad_value: Constant gray level used for letterbox padding.
        heif_quality: JPEG quality used when transcoding HEIC/HEIF uploads.
    """

    pad_value: int = 114
    heif_quality: int = 95


@dataclass(frozen=True)
class DetectionConfig:
    """Detection thresholds.

    Attributes:
        confidence_threshold: Minimum confidence to keep an anchor.
        iou_threshold: IoU above which a lower-confidence box is suppressed.
    """

    confidence_threshold: float = 0.25
    iou_threshold: float = 0.5


@dataclass(frozen=True)
class MaskConfig:
    """Mask acceptance filters and polygon post-processing.

    Attributes:
        max_area_ratio: Masks covering more than this share of the grid are noise.
        min_area_ratio: Above this share, the aspect-ratio cap applies.
        max_aspect_ratio: Longest/shortest side cap of the min-area rectangle.
        morph_kernel_size: Side of the elliptical opening kernel.
        smoothing_radius: Half-width of the circular Gaussian window.
        smoothing_sigma: Gaussian sigma, in ring positions.
        expansion_ratio: Outward push as a fraction of the image diagonal.
    """

    max_area_ratio: float = 0.03
    min_area_ratio: float = 0.01
    max_aspect_ratio: float = 2.0
    morph_kernel_size: int = 3
    smoothing_radius: int = 2
    smoothing_sigma: float = 0.75
    expansion_ratio: float = 0.005


@dataclass(frozen=True)
class PoolConfig:
    """Worker pool and job table settings.

    Attributes:
        max_workers: Upper bound on live worker processes.
        job_timeout: Seconds a job may run before its worker is recycled.
                     0 disables deadlines.
        job_ttl: Seconds a finished job stays pollable.
        start_method: multiprocessing start method for workers.
        poll_interval: Coordinator wake-up period in seconds.
    """

    max_workers: int = 4
    job_timeout: float = 120.0
    job_ttl: float = 3600.0
    start_method: str = "spawn"
    poll_interval: float = 0.05


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings shared by the coordinator and its workers."""

    level: str = "INFO"


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration.

    Aggregates all sub-configurations into a single, frozen object.
    """

    model: ModelConfig = field(default_factory=ModelConfig)
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    mask: MaskConfig = field(default_factory=MaskConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_VALID_BACKENDS = {"cpu", "cuda"}
_VALID_CHANNELS = {1, 3}
_VALID_START_METHODS = {"spawn", "fork", "forkserver"}
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _check_ratio(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ValueError(f"{name} must be in [0.0, 1.0], got {value}.")


def _check_positive(name: str, value) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}.")


def validate_config(config: AppConfig) -> None:
    """Validate configuration values. Raises ValueError on invalid state."""

    if config.model.backend not in _VALID_BACKENDS:
        raise ValueError(
            f"Invalid model.backend: '{config.model.backend}'. "
            f"Must be one of {_VALID_BACKENDS}."
        )

    if config.model.channels not in _VALID_CHANNELS:
        raise ValueError(
            f"model.channels must be one of {_VALID_CHANNELS}, "
            f"got {config.model.channels}."
        )

    _check_positive("model.input_size", config.model.input_size)
    _check_positive("model.mask_size", config.model.mask_size)
    _check_positive("model.num_mask_coeffs", config.model.num_mask_coeffs)

    if config.model.max_model_bytes < 0:
        raise ValueError(
            f"model.max_model_bytes must be >= 0, got {config.model.max_model_bytes}."
        )

    if not (0 <= config.preprocess.pad_value <= 255):
        raise ValueError(
            f"preprocess.pad_value must be in [0, 255], "
            f"got {config.preprocess.pad_value}."
        )

    if not (1 <= config.preprocess.heif_quality <= 100):
        raise ValueError(
            f"preprocess.heif_quality must be in [1, 100], "
            f"got {config.preprocess.heif_quality}."
        )

    _check_ratio("detection.confidence_threshold", config.detection.confidence_threshold)
    _check_ratio("detection.iou_threshold", config.detection.iou_threshold)

    _check_ratio("mask.max_area_ratio", config.mask.max_area_ratio)
    _check_ratio("mask.min_area_ratio", config.mask.min_area_ratio)
    if config.mask.min_area_ratio > config.mask.max_area_ratio:
        raise ValueError(
            f"mask.min_area_ratio ({config.mask.min_area_ratio}) must not exceed "
            f"mask.max_area_ratio ({config.mask.max_area_ratio})."
        )
    if config.mask.max_aspect_ratio < 1.0:
        raise ValueError(
            f"mask.max_aspect_ratio must be >= 1.0, got {config.mask.max_aspect_ratio}."
        )
    if config.mask.morph_kernel_size <= 0 or config.mask.morph_kernel_size % 2 == 0:
        raise ValueError(
            f"mask.morph_kernel_size must be a positive odd integer, "
            f"got {config.mask.morph_kernel_size}."
        )
    if config.mask.smoothing_radius < 0:
        raise ValueError(
            f"mask.smoothing_radius must be >= 0, got {config.mask.smoothing_radius}."
        )
    _check_positive("mask.smoothing_sigma", config.mask.smoothing_sigma)
    if config.mask.expansion_ratio < 0:
        raise ValueError(
            f"mask.expansion_ratio must be >= 0, got {config.mask.expansion_ratio}."
        )

    _check_positive("pool.max_workers", config.pool.max_workers)
    _check_positive("pool.poll_interval", config.pool.poll_interval)
    if config.pool.job_timeout < 0:
        raise ValueError(
            f"pool.job_timeout must be >= 0, got {config.pool.job_timeout}."
        )
    _check_positive("pool.job_ttl", config.pool.job_ttl)
    if config.pool.start_method not in _VALID_START_METHODS:
        raise ValueError(
            f"Invalid pool.start_method: '{config.pool.start_method}'. "
            f"Must be one of {_VALID_START_METHODS}."
        )

    if config.logging.level not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid logging.level: '{config.logging.level}'. "
            f"Must be one of {_VALID_LOG_LEVELS}."
        )


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _build_section(cls, raw: dict, casts: dict):
    """Build a config dataclass from a raw YAML dict.

    Only keys listed in ``casts`` are accepted; unknown keys are logged
    and ignored so that a typo never silently changes another field.
    """
    kwargs = {}
    for key, value in raw.items():
        cast = casts.get(key)
        if cast is None:
            logger.warning("Ignoring unknown config key: %s.%s", cls.__name__, key)
            continue
        kwargs[key] = cast(value)
    return cls(**kwargs)


def _lower_str(value) -> str:
    return str(value).lower()


def _upper_str(value) -> str:
    return str(value).upper()


_MODEL_CASTS = {
    "model_path": str,
    "backend": _lower_str,
    "input_size": int,
    "channels": int,
    "mask_size": int,
    "num_mask_coeffs": int,
    "detection_output": str,
    "prototype_output": str,
    "max_model_bytes": int,
}

_PREPROCESS_CASTS = {
    "pad_value": int,
    "heif_quality": int,
}

_DETECTION_CASTS = {
    "confidence_threshold": float,
    "iou_threshold": float,
}

_MASK_CASTS = {
    "max_area_ratio": float,
    "min_area_ratio": float,
    "max_aspect_ratio": float,
    "morph_kernel_size": int,
    "smoothing_radius": int,
    "smoothing_sigma": float,
    "expansion_ratio": float,
}

_POOL_CASTS = {
    "max_workers": int,
    "job_timeout": float,
    "job_ttl": float,
    "start_method": _lower_str,
    "poll_interval": float,
}

_LOGGING_CASTS = {
    "level": _upper_str,
}


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "HOLDSEG_"


def _apply_env_overrides(raw: dict) -> dict:
    """Apply environment variable overrides to the raw config dict.

    Environment variables follow the pattern:
        HOLDSEG_MODEL_BACKEND=cuda
        HOLDSEG_DETECTION_CONFIDENCE_THRESHOLD=0.4
        HOLDSEG_POOL_MAX_WORKERS=2
    """
    env_map = {
        f"{_ENV_PREFIX}MODEL_PATH": ("model", "model_path"),
        f"{_ENV_PREFIX}MODEL_BACKEND": ("model", "backend"),
        f"{_ENV_PREFIX}MODEL_MAX_MODEL_BYTES": ("model", "max_model_bytes"),
        f"{_ENV_PREFIX}DETECTION_CONFIDENCE_THRESHOLD": ("detection", "confidence_threshold"),
        f"{_ENV_PREFIX}DETECTION_IOU_THRESHOLD": ("detection", "iou_threshold"),
        f"{_ENV_PREFIX}MASK_EXPANSION_RATIO": ("mask", "expansion_ratio"),
        f"{_ENV_PREFIX}POOL_MAX_WORKERS": ("pool", "max_workers"),
        f"{_ENV_PREFIX}POOL_JOB_TIMEOUT": ("pool", "job_timeout"),
        f"{_ENV_PREFIX}POOL_JOB_TTL": ("pool", "job_ttl"),
        f"{_ENV_PREFIX}POOL_START_METHOD": ("pool", "start_method"),
        f"{_ENV_PREFIX}LOGGING_LEVEL": ("logging", "level"),
    }

    for env_var, (section, key) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            raw.setdefault(section, {})[key] = value
            logger.debug("Config override from env: %s=%s", env_var, value)

    return raw


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration.

    Precedence (highest → lowest):
        Environment variables > YAML file > Hard-coded defaults

    Args:
        config_path: Path to a YAML configuration file. If None,
                     the system runs entirely on defaults (safe for
                     programmatic usage).

    Returns:
        A validated, frozen AppConfig instance.

    Raises:
        FileNotFoundError: If config_path is provided but does not exist.
        ValueError: If any configuration value is invalid.
        yaml.YAMLError: If the YAML file is malformed.
    """
    raw: dict = {}

    # --- Layer 1: YAML file ---
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.is_absolute():
            resolved = _PROJECT_ROOT / resolved

        if not resolved.is_file():
            raise FileNotFoundError(
                f"Configuration file not found: {resolved}. "
                f"Provide a valid path or omit to use defaults."
            )

        logger.info("Loading config from: %s", resolved)
        with open(resolved, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    # --- Layer 2: Environment variable overrides ---
    raw = _apply_env_overrides(raw)

    # --- Build typed configs ---
    config = AppConfig(
        model=_build_section(ModelConfig, raw.get("model", {}), _MODEL_CASTS),
        preprocess=_build_section(PreprocessConfig, raw.get("preprocess", {}), _PREPROCESS_CASTS),
        detection=_build_section(DetectionConfig, raw.get("detection", {}), _DETECTION_CASTS),
        mask=_build_section(MaskConfig, raw.get("mask", {}), _MASK_CASTS),
        pool=_build_section(PoolConfig, raw.get("pool", {}), _POOL_CASTS),
        logging=_build_section(LoggingConfig, raw.get("logging", {}), _LOGGING_CASTS),
    )

    # --- Validate ---
    validate_config(config)

    logger.debug("Configuration loaded: %s", config)
    return config
