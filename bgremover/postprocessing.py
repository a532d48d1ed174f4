"""Mask post-processing: mask resampling, alpha injection and edge softening."""

from __future__ import annotations

import logging
import math

import cv2
import numpy as np

from .imaging import RasterImage, resample

logger = logging.getLogger(__name__)


def quantize_alpha(probabilities: np.ndarray) -> np.ndarray:
    """Map foreground probabilities to uint8 alpha: round(p * 255), clamped."""
    scaled = np.rint(probabilities.astype(np.float32) * 255.0)
    return np.clip(scaled, 0, 255).astype(np.uint8)


def write_alpha(original: RasterImage, probabilities: np.ndarray) -> RasterImage:
    """Return a copy of `original` whose alpha is the (H, W) probability map."""
    if probabilities.shape != (original.height, original.width):
        raise ValueError(
            f"Mask shape {probabilities.shape} does not match image {(original.height, original.width)}"
        )
    out = original.copy()
    out.pixels[..., 3] = quantize_alpha(probabilities)
    return out


def apply_mask(
    mask: np.ndarray,
    side: int,
    target_width: int,
    target_height: int,
    original: RasterImage,
) -> RasterImage:
    """
    Resize a flat `side` x `side` probability mask to the original resolution
    and write it into the alpha channel of a copy of `original`.

    RGB is left untouched, output dimensions always equal `original`'s.
    """
    if mask.size != side * side:
        raise ValueError(f"Mask holds {mask.size} values, expected {side * side}")
    if (target_width, target_height) != original.size:
        raise ValueError(
            f"Target size {(target_width, target_height)} does not match image {original.size}"
        )

    square = np.clip(mask.astype(np.float32, copy=False).reshape(side, side), 0.0, 1.0)
    restored = resample(square, target_width, target_height)
    return write_alpha(original, restored)


def _gaussian_kernel(radius: float) -> np.ndarray:
    half = max(1, int(math.ceil(radius * 3.0)))
    return cv2.getGaussianKernel(2 * half + 1, radius, cv2.CV_32F)


def soften_edges(image: RasterImage, radius: float) -> RasterImage:
    """
    Blur the alpha channel only, leaving RGB untouched.

    Separable Gaussian with sigma `radius`; radius <= 0 returns an unchanged copy.
    """
    out = image.copy()
    if radius <= 0:
        return out

    kernel = _gaussian_kernel(float(radius))
    alpha = image.alpha.astype(np.float32)
    blurred = cv2.sepFilter2D(alpha, cv2.CV_32F, kernel, kernel, borderType=cv2.BORDER_REPLICATE)
    out.pixels[..., 3] = np.clip(np.rint(blurred), 0, 255).astype(np.uint8)
    logger.debug("softened alpha with radius=%.2f kernel=%d", radius, kernel.shape[0])
    return out
