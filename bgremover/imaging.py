"""
Pixel buffer utilities.

Everything downstream works on `RasterImage`: an interleaved RGBA uint8 buffer
of shape (H, W, 4). Decoding and encoding go through Pillow, resampling goes
through OpenCV so the pre- and post-processing stages share one filter.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from io import BytesIO
import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError, EncodeError

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

NAMED_COLORS = {
    "white": (255, 255, 255),
    "black": (0, 0, 0),
}


class ImageFormat(str, Enum):
    PNG = "png"
    WEBP = "webp"

    @property
    def extension(self) -> str:
        return "." + self.value

    @property
    def mime_type(self) -> str:
        return "image/" + self.value


@dataclass
class RasterImage:
    """RGBA pixels, row-major, 8 bits per channel, no row padding."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"Expected RGBA pixels (H,W,4), got {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")
        if self.pixels.shape[0] == 0 or self.pixels.shape[1] == 0:
            raise ValueError("Image must be at least 1x1")
        self.pixels = np.ascontiguousarray(self.pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def copy(self) -> "RasterImage":
        return RasterImage(self.pixels.copy())

    def tobytes(self) -> bytes:
        return self.pixels.tobytes()

    @classmethod
    def from_bytes(cls, buffer: bytes, width: int, height: int) -> "RasterImage":
        expected = width * height * 4
        if len(buffer) != expected:
            raise ValueError(f"Buffer holds {len(buffer)} bytes, expected {expected} for {width}x{height}")
        pixels = np.frombuffer(buffer, dtype=np.uint8).reshape(height, width, 4).copy()
        return cls(pixels)

    @classmethod
    def from_rgb(cls, rgb: np.ndarray) -> "RasterImage":
        """Wrap an (H,W,3) uint8 array as a fully opaque image."""
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return cls(np.concatenate([rgb.astype(np.uint8, copy=False), alpha], axis=2))

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        if image.mode == "I" or image.mode.startswith("I;16"):
            # 16-bit samples: scale to 8 bits, convert("RGBA") would clip them.
            samples = np.asarray(image, dtype=np.int64) >> 8
            image = Image.fromarray(np.clip(samples, 0, 255).astype(np.uint8), mode="L")
        return cls(np.array(image.convert("RGBA"), dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels, mode="RGBA")


def decode_image(data: bytes) -> RasterImage:
    """Decode any Pillow-readable image into RGBA, honoring EXIF orientation."""
    if not data:
        raise DecodeError("Invalid image data: empty input")
    try:
        with Image.open(BytesIO(data)) as image:
            image = ImageOps.exif_transpose(image)
            raster = RasterImage.from_pil(image)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise DecodeError("Invalid image data") from exc
    logger.debug("decoded image %dx%d", raster.width, raster.height)
    return raster


def load_image(path: Union[str, Path]) -> RasterImage:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise DecodeError(f"Could not read image: {path}") from exc
    return decode_image(data)


def encode_image(
    image: RasterImage,
    fmt: Union[ImageFormat, str] = ImageFormat.PNG,
    quality: float = 1.0,
) -> bytes:
    """
    Serialize to PNG (lossless) or WebP (lossy with alpha).

    `quality` is in [0, 1] and only affects the lossy path.
    """
    try:
        fmt = ImageFormat(fmt.lower() if isinstance(fmt, str) else fmt)
    except ValueError as exc:
        raise EncodeError(f"Unsupported export format: {fmt}") from exc
    if not 0.0 <= quality <= 1.0:
        raise EncodeError(f"quality must be within [0, 1], got {quality}")

    buf = BytesIO()
    try:
        if fmt is ImageFormat.PNG:
            image.to_pil().save(buf, format="PNG")
        else:
            image.to_pil().save(buf, format="WEBP", quality=int(round(quality * 100)))
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(f"Failed to encode image as {fmt.value}") from exc
    return buf.getvalue()


def parse_color(value: Union[str, Color, None]) -> Optional[Color]:
    """
    Resolve a background color: '#RRGGBB', a named swatch, or an RGB tuple.

    Returns None for 'transparent' or None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in ("", "transparent"):
            return None
        if raw in NAMED_COLORS:
            return NAMED_COLORS[raw]
        if raw.startswith("#"):
            raw = raw[1:]
        if len(raw) != 6:
            raise ValueError(f"Invalid color: {value!r}")
        try:
            return int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16)
        except ValueError as exc:
            raise ValueError(f"Invalid color: {value!r}") from exc
    if len(value) != 3 or any(not 0 <= int(c) <= 255 for c in value):
        raise ValueError(f"Invalid color: {value!r}")
    return int(value[0]), int(value[1]), int(value[2])


def composite_over_color(image: RasterImage, color: Color) -> RasterImage:
    """Alpha-composite `image` onto a solid color; the result is fully opaque."""
    alpha = image.alpha.astype(np.float32)[..., None] / 255.0
    fg = image.rgb.astype(np.float32)
    bg = np.array(color, dtype=np.float32).reshape(1, 1, 3)
    blended = fg * alpha + bg * (1.0 - alpha)
    rgb = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
    return RasterImage.from_rgb(rgb)


def resample(array: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Bilinear resize of an (H,W) or (H,W,C) array to (height, width).

    Shared by the tensor preprocessor and the mask postprocessor: the down-
    and up-sampling legs must use the same filter.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid target size: {(width, height)}")
    if array.shape[1] == width and array.shape[0] == height:
        return array.copy()
    return cv2.resize(array, (width, height), interpolation=cv2.INTER_LINEAR)
