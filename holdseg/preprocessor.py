"""
Preprocessing for the segmentation pipeline.

Responsibility:
    Turn raw uploaded bytes into the model's input tensor plus the
    letterbox geometry needed to map results back onto the original
    image.

Steps:
    1. Sniff the container; HEIC/HEIF is transcoded to JPEG first.
    2. Decode with Pillow and apply EXIF orientation.
    3. Letterbox: aspect-preserving resize so the longer side is S,
       then constant-color padding to S x S.
    4. Drop alpha, convert to RGB (or grayscale), scale to [0, 1].
    5. HWC → CHW with a leading batch axis.

Non-goals:
    - No inference or coordinate mapping.
    - No model-awareness beyond the input size and channel count.

Failure behavior:
    - Empty payload raises InputError.
    - Unreadable or truncated bytes raise DecodeError.
    - A failed HEIC transcode is logged and the original bytes are used.
"""

import io
import logging
import warnings
from dataclasses import dataclass

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from holdseg.config import ModelConfig, PreprocessConfig
from holdseg.errors import DecodeError, InputError
from holdseg.geometry import Letterbox

logger = logging.getLogger(__name__)

# ISO-BMFF brands used by HEIC/HEIF stills and sequences
_HEIF_BRANDS = {
    b"heic", b"heix", b"heim", b"heis",
    b"hevc", b"hevx", b"hevm", b"hevs",
    b"mif1", b"msf1",
}


@dataclass(frozen=True)
class PreprocessedImage:
    """Model input tensor and the geometry that produced it.

    Attributes:
        tensor: float32 array of shape (1, Ch, S, S) with values in [0, 1].
        letterbox: Resize/padding record for the inverse mapping.
    """

    tensor: np.ndarray
    letterbox: Letterbox

    @property
    def original_width(self) -> int:
        return self.letterbox.original_width

    @property
    def original_height(self) -> int:
        return self.letterbox.original_height


def is_heif(data: bytes) -> bool:
    """Return True if ``data`` starts like a HEIC/HEIF container."""
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS


def transcode_heif(data: bytes, quality: int) -> bytes:
    """Transcode HEIC/HEIF bytes to JPEG.

    Raises whatever pillow-heif raises; the caller decides whether that
    is fatal.
    """
    import pillow_heif

    heif = pillow_heif.open_heif(data, convert_hdr_to_8bit=True)
    image = heif.to_pillow()
    out = io.BytesIO()
    image.convert("RGB").save(out, format="JPEG", quality=quality, exif=image.info.get("exif", b""))
    return out.getvalue()


def decode_image(data: bytes, config: PreprocessConfig) -> Image.Image:
    """Decode uploaded bytes into an orientation-corrected Pillow image.

    Raises:
        InputError: If ``data`` is empty or not bytes.
        DecodeError: If the bytes cannot be decoded.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InputError(
            f"Expected image bytes, got {type(data).__name__}."
        )
    data = bytes(data)
    if not data:
        raise InputError("Image payload is empty.")

    if is_heif(data):
        logger.info("Detected HEIC/HEIF image. Converting to JPEG...")
        try:
            data = transcode_heif(data, config.heif_quality)
        except Exception as e:
            logger.warning("HEIC conversion failed, proceeding with original buffer: %s", e)

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            image = Image.open(io.BytesIO(data))
            image.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError,
            Image.DecompressionBombWarning, Image.DecompressionBombError) as e:
        raise DecodeError(f"Unable to decode image ({len(data)} bytes): {e}") from e

    return ImageOps.exif_transpose(image)


def _to_array(image: Image.Image, channels: int) -> np.ndarray:
    """Drop alpha and convert to an (H, W, Ch) uint8 array."""
    mode = "RGB" if channels == 3 else "L"
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode != mode:
        image = image.convert(mode)

    arr = np.asarray(image, dtype=np.uint8)
    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    return arr


def letterbox_image(arr: np.ndarray, letterbox: Letterbox, pad_value: int) -> np.ndarray:
    """Resize ``arr`` to the letterbox size and pad it to S x S."""
    resized = cv2.resize(
        arr,
        (letterbox.resize_width, letterbox.resize_height),
        interpolation=cv2.INTER_LINEAR,
    )
    channels = arr.shape[2]
    if resized.ndim == 2:
        resized = resized[:, :, np.newaxis]

    padded = cv2.copyMakeBorder(
        resized,
        letterbox.pad_top,
        letterbox.pad_bottom,
        letterbox.pad_left,
        letterbox.pad_right,
        cv2.BORDER_CONSTANT,
        value=(pad_value,) * max(channels, 3),
    )
    if padded.ndim == 2:
        padded = padded[:, :, np.newaxis]
    return padded


def preprocess(
    image_bytes: bytes,
    model_config: ModelConfig,
    preprocess_config: PreprocessConfig,
) -> PreprocessedImage:
    """Convert uploaded image bytes into the model input tensor.

    Args:
        image_bytes: Raw upload in any format Pillow (or pillow-heif) reads.
        model_config: Provides the input size S and channel count Ch.
        preprocess_config: Provides the pad color and HEIC quality.

    Returns:
        A PreprocessedImage holding a (1, Ch, S, S) float32 tensor and
        the letterbox geometry.

    Raises:
        InputError: If the payload is empty.
        DecodeError: If the payload cannot be decoded.
    """
    image = decode_image(image_bytes, preprocess_config)
    width, height = image.size
    letterbox = Letterbox.fit(width, height, model_config.input_size)

    arr = _to_array(image, model_config.channels)
    padded = letterbox_image(arr, letterbox, preprocess_config.pad_value)

    tensor = padded.astype(np.float32) / 255.0
    tensor = np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis])

    logger.debug(
        "Preprocessed %dx%d image → resize %dx%d, pad (%d, %d)",
        width, height,
        letterbox.resize_width, letterbox.resize_height,
        letterbox.pad_left, letterbox.pad_top,
    )
    return PreprocessedImage(tensor=tensor, letterbox=letterbox)
