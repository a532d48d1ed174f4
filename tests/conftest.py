"""Shared fixtures: synthetic images, settings and in-memory backends."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image
import pytest

from bgremover.backends import BackendKind, BackendRegistry, SegmentationBackend
from bgremover.config import Settings
from bgremover.imaging import RasterImage
from bgremover.postprocessing import write_alpha


def make_raster(width: int, height: int, seed: int = 0) -> RasterImage:
    rng = np.random.default_rng(seed)
    rgb = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    return RasterImage.from_rgb(rgb)


def png_bytes(width: int, height: int, color: Tuple[int, int, int] = (200, 40, 90)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeBackend(SegmentationBackend):
    """Reports download progress in chunks and paints a constant alpha."""

    def __init__(
        self,
        kind: BackendKind = BackendKind.GENERAL,
        total: int = 1_000_000,
        chunks: int = 4,
        probability: float = 0.5,
        fail_init: bool = False,
        fail_segment: bool = False,
    ):
        super().__init__()
        self.kind = kind
        self.total = total
        self.chunks = chunks
        self.probability = probability
        self.fail_init = fail_init
        self.fail_segment = fail_segment
        self.load_calls = 0
        self.segment_calls = 0
        self.release_calls = 0

    def _load(self, progress_callback) -> None:
        self.load_calls += 1
        if self.fail_init:
            raise RuntimeError("weights missing")
        step = self.total // self.chunks if self.total else 1000
        for i in range(1, self.chunks + 1):
            if progress_callback is not None:
                progress_callback(step * i, self.total)

    def _segment(self, image: RasterImage) -> RasterImage:
        self.segment_calls += 1
        if self.fail_segment:
            raise RuntimeError("session exploded")
        return write_alpha(image, np.full((image.height, image.width), self.probability, dtype=np.float32))

    def _release(self) -> None:
        self.release_calls += 1


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        model_cache_dir=tmp_path / "cache",
        min_model_bytes=16,
        device="cpu",
        general_model_source=str(tmp_path / "missing-u2net.onnx"),
        general_model_fallback=None,
        portrait_model_source=str(tmp_path / "missing-modnet.torchscript"),
        portrait_model_fallback=None,
    )


@pytest.fixture
def fake_backends() -> List[FakeBackend]:
    return [FakeBackend(BackendKind.PORTRAIT), FakeBackend(BackendKind.GENERAL)]


@pytest.fixture
def registry(fake_backends: List[FakeBackend]) -> BackendRegistry:
    portrait, general = fake_backends
    return BackendRegistry({BackendKind.PORTRAIT: lambda: portrait, BackendKind.GENERAL: lambda: general})


def progress_values(events) -> List[float]:
    return [e.progress for e in events]


def first_index(values: List[float], target: float) -> Optional[int]:
    for i, v in enumerate(values):
        if v == target:
            return i
    return None
