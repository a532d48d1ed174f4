"""
General-purpose backend: U2-Net on ONNX Runtime.

The model only accepts a fixed square input, so every request goes through
the full stretch -> 320x320 inference -> resize-back pipeline.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import onnxruntime as ort

from . import config
from .backends import BackendKind, SegmentationBackend
from .imaging import RasterImage
from .model_cache import ModelCache
from .model_loader import ModelSource, ProgressCallback, create_onnx_session, load_model_bytes
from .postprocessing import apply_mask
from .preprocessing import UNIT_SCALE, Normalization, to_tensor

logger = logging.getLogger(__name__)


class GeneralBackend(SegmentationBackend):
    kind = BackendKind.GENERAL

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        cache: Optional[ModelCache] = None,
        normalization: Normalization = UNIT_SCALE,
    ):
        super().__init__()
        self._settings = settings or config.get_settings()
        self._cache = cache or ModelCache(self._settings.model_cache_dir)
        self._normalization = normalization
        self._side = self._settings.general_input_size
        self._session: Optional[ort.InferenceSession] = None

    def _load(self, progress_callback: Optional[ProgressCallback]) -> None:
        s = self._settings
        data = load_model_bytes(
            ModelSource(s.general_model_source, s.general_model_fallback),
            cache=self._cache,
            progress_callback=progress_callback,
            min_size=s.min_model_bytes,
            timeout=s.download_timeout_seconds,
            chunk_size=s.download_chunk_size,
        )
        self._session = create_onnx_session(data)

    def predict_mask(self, tensor: np.ndarray) -> np.ndarray:
        """Run the session on a flat planar tensor and return the flat mask."""
        side = self._side
        feeds = {self._session.get_inputs()[0].name: tensor.reshape(1, 3, side, side)}
        outputs = self._session.run([self._session.get_outputs()[0].name], feeds)
        # First output is the fused side output d0, shape (1, 1, side, side).
        mask = np.asarray(outputs[0], dtype=np.float32)
        if mask.size < side * side:
            raise RuntimeError(f"Unexpected mask shape: {mask.shape}")
        return np.clip(mask.reshape(-1)[: side * side], 0.0, 1.0)

    def _segment(self, image: RasterImage) -> RasterImage:
        tensor = to_tensor(image, self._side, self._normalization)
        mask = self.predict_mask(tensor)
        return apply_mask(mask, self._side, image.width, image.height, image)

    def _release(self) -> None:
        self._session = None
