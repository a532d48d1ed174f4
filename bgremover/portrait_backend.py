"""
Portrait backend: MODNet TorchScript matting at native aspect ratio.

The whole image is fed through its own tensor (long edge capped, sides
rounded to multiples of 32) and the predicted matte is interpolated straight
back to full resolution. There is no fixed square stage.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F

from . import config
from .backends import BackendKind, SegmentationBackend
from .imaging import RasterImage
from .model_cache import ModelCache
from .model_loader import ModelSource, ProgressCallback, get_device, load_model_bytes, load_torchscript
from .postprocessing import write_alpha
from .preprocessing import SYMMETRIC, Normalization, to_portrait_tensor

logger = logging.getLogger(__name__)


def _extract_matte(output) -> torch.Tensor:
    """
    MODNet returns (semantic, detail, matte) in inference mode, exported
    wrappers return the matte alone. Take the last tensor either way.
    """
    if isinstance(output, torch.Tensor):
        return output
    if isinstance(output, (list, tuple)):
        for item in reversed(output):
            if isinstance(item, torch.Tensor):
                return item
    raise RuntimeError(f"Model output is not a tensor: {type(output)}")


class PortraitBackend(SegmentationBackend):
    kind = BackendKind.PORTRAIT

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        cache: Optional[ModelCache] = None,
        normalization: Normalization = SYMMETRIC,
    ):
        super().__init__()
        self._settings = settings or config.get_settings()
        self._cache = cache or ModelCache(self._settings.model_cache_dir)
        self._normalization = normalization
        self._model: Optional[torch.nn.Module] = None
        self._device: Optional[torch.device] = None

    def _load(self, progress_callback: Optional[ProgressCallback]) -> None:
        s = self._settings
        data = load_model_bytes(
            ModelSource(s.portrait_model_source, s.portrait_model_fallback),
            cache=self._cache,
            progress_callback=progress_callback,
            min_size=s.min_model_bytes,
            timeout=s.download_timeout_seconds,
            chunk_size=s.download_chunk_size,
        )
        self._device = get_device(s.device)
        self._model = load_torchscript(data, self._device)
        logger.info("MODNet loaded on device: %s", self._device)

    def _segment(self, image: RasterImage) -> RasterImage:
        batch, (in_w, in_h) = to_portrait_tensor(image, self._settings.portrait_max_long_edge, self._normalization)
        logger.debug("portrait inference %dx%d -> %dx%d", image.width, image.height, in_w, in_h)

        tensor = torch.from_numpy(batch).to(self._device)
        with torch.no_grad():
            matte = _extract_matte(self._model(tensor))
        if matte.ndim == 3:
            matte = matte.unsqueeze(1)
        matte = F.interpolate(
            matte[:, :1].float(),
            size=(image.height, image.width),
            mode="bilinear",
            align_corners=False,
        )
        alpha = matte[0, 0].detach().cpu().numpy()
        if not np.isfinite(alpha).all():
            raise RuntimeError("NaNs detected in predicted matte")
        return write_alpha(image, np.clip(alpha, 0.0, 1.0))

    def _release(self) -> None:
        self._model = None
        if self._device is not None and self._device.type == "cuda":
            torch.cuda.empty_cache()
        self._device = None
