"""
Tensor preparation for the segmentation models.

Two layouts are produced here:
 - the general backend's fixed square tensor (stretched, planar, flat);
 - the portrait backend's native-aspect NCHW tensor.
Normalization is a per-backend parameter, never a global constant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .imaging import RasterImage, resample


@dataclass(frozen=True)
class Normalization:
    mean: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    std: Tuple[float, float, float] = (1.0, 1.0, 1.0)

    def apply(self, planes: np.ndarray) -> np.ndarray:
        """Normalize a (3, H, W) float32 array already scaled to [0, 1]."""
        if self == UNIT_SCALE:
            return planes
        mean = np.asarray(self.mean, dtype=np.float32).reshape(3, 1, 1)
        std = np.asarray(self.std, dtype=np.float32).reshape(3, 1, 1)
        return (planes - mean) / std


# Plain [0,255] -> [0,1] scaling (U2-Net).
UNIT_SCALE = Normalization()
# Centered to [-1, 1] (MODNet).
SYMMETRIC = Normalization(mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5))


def _planar(rgb: np.ndarray, normalization: Normalization) -> np.ndarray:
    planes = np.transpose(rgb, (2, 0, 1)).astype(np.float32) / 255.0  # HWC -> CHW
    return np.ascontiguousarray(normalization.apply(planes), dtype=np.float32)


def to_tensor(image: RasterImage, side: int, normalization: Normalization = UNIT_SCALE) -> np.ndarray:
    """
    Stretch `image` to `side` x `side` and pack it channel-planar.

    Aspect ratio is deliberately ignored; the fixed-input model was trained on
    stretched squares. Alpha is dropped. Returns a flat float32 array of
    length 3 * side * side: all red values, then green, then blue.
    """
    if side <= 0:
        raise ValueError(f"side must be positive, got {side}")
    resized = resample(image.rgb, side, side)
    return _planar(resized, normalization).reshape(-1)


def portrait_input_size(width: int, height: int, max_long_edge: int, multiple: int = 32) -> Tuple[int, int]:
    """
    Native-aspect model input size.

    The long edge is capped at `max_long_edge` and both sides are rounded to
    a multiple of 32, which MODNet's down/up sampling chain requires.
    """
    scale = 1.0
    long_edge = max(width, height)
    if max_long_edge > 0 and long_edge > max_long_edge:
        scale = max_long_edge / long_edge
    new_w = max(multiple, int(round(width * scale / multiple)) * multiple)
    new_h = max(multiple, int(round(height * scale / multiple)) * multiple)
    return new_w, new_h


def to_portrait_tensor(
    image: RasterImage,
    max_long_edge: int,
    normalization: Normalization = SYMMETRIC,
) -> Tuple[np.ndarray, Tuple[int, int]]:
    """Return a (1, 3, h, w) float32 array and its (w, h) size."""
    new_w, new_h = portrait_input_size(image.width, image.height, max_long_edge)
    resized = resample(image.rgb, new_w, new_h)
    return _planar(resized, normalization)[np.newaxis], (new_w, new_h)
