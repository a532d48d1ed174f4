"""
Model loading utilities.

The loader:
 - resolves model bytes from a primary source with one fallback,
 - serves URL sources from the on-device cache when possible,
 - rejects truncated downloads and pointer stubs,
 - builds the TorchScript module or ONNX Runtime session from raw bytes.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Callable, List, Optional

import onnxruntime as ort
import requests
import torch

from .errors import InitError, ModelUnavailableError
from .model_cache import ModelCache, validate_model_bytes

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class ModelSource:
    primary: str
    fallback: Optional[str] = None

    def locations(self) -> List[str]:
        return [loc for loc in (self.primary, self.fallback) if loc]


def is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def fetch_model_bytes(
    url: str,
    progress_callback: Optional[ProgressCallback] = None,
    timeout: int = 60,
    chunk_size: int = 1 << 16,
    session: Optional[requests.Session] = None,
) -> bytes:
    """
    Stream a model download, reporting (loaded, total) after every chunk.

    `total` is 0 when the server does not send a Content-Length.
    """
    http = session or requests
    logger.info("Downloading model from %s", url)
    with http.get(url, stream=True, timeout=(5, timeout)) as resp:
        resp.raise_for_status()
        total = int(resp.headers.get("content-length") or 0)
        chunks: List[bytes] = []
        loaded = 0
        for chunk in resp.iter_content(chunk_size=chunk_size):
            if not chunk:
                continue
            chunks.append(chunk)
            loaded += len(chunk)
            if progress_callback is not None:
                progress_callback(loaded, total)
    return b"".join(chunks)


def _read_cached(cache: ModelCache, url: str, min_size: int) -> Optional[bytes]:
    try:
        data = cache.get(url)
        if data is None:
            return None
        return validate_model_bytes(data, min_size, source=f"cache:{url}")
    except (OSError, InitError) as exc:
        logger.warning("Discarding unreadable cached model for %s: %s", url, exc)
        try:
            cache.delete(url)
        except OSError:
            logger.warning("Could not evict cached model for %s", url)
        return None


def _load_location(
    location: str,
    cache: Optional[ModelCache],
    progress_callback: Optional[ProgressCallback],
    min_size: int,
    timeout: int,
    chunk_size: int,
    session: Optional[requests.Session],
) -> bytes:
    if not is_url(location):
        path = Path(location).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Model not found at {path}")
        data = validate_model_bytes(path.read_bytes(), min_size, source=str(path))
        if progress_callback is not None:
            progress_callback(len(data), len(data))
        return data

    if cache is not None:
        cached = _read_cached(cache, location, min_size)
        if cached is not None:
            logger.info("Model loaded from cache: %s", location)
            if progress_callback is not None:
                progress_callback(len(cached), len(cached))
            return cached

    data = fetch_model_bytes(location, progress_callback, timeout=timeout, chunk_size=chunk_size, session=session)
    data = validate_model_bytes(data, min_size, source=location)
    if cache is not None:
        try:
            cache.set(location, data)
        except OSError as exc:
            logger.warning("Failed to cache model from %s: %s", location, exc)
    return data


def load_model_bytes(
    source: ModelSource,
    cache: Optional[ModelCache] = None,
    progress_callback: Optional[ProgressCallback] = None,
    min_size: int = 0,
    timeout: int = 60,
    chunk_size: int = 1 << 16,
    session: Optional[requests.Session] = None,
) -> bytes:
    """Return validated model bytes from the primary source, else the fallback."""
    errors = []
    for location in source.locations():
        try:
            return _load_location(location, cache, progress_callback, min_size, timeout, chunk_size, session)
        except (OSError, requests.RequestException, InitError) as exc:
            logger.warning("Model source %s failed: %s", location, exc)
            errors.append(f"{location}: {exc}")
    raise ModelUnavailableError("No usable model source. " + "; ".join(errors))


def get_device(preferred: Optional[str] = None) -> torch.device:
    """Return the inference device; prefers CUDA -> Apple MPS -> CPU."""
    if preferred:
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


def load_torchscript(data: bytes, device: torch.device) -> torch.nn.Module:
    """Load a TorchScript module from raw bytes and put it in eval mode."""
    model = torch.jit.load(BytesIO(data), map_location=device)
    model.eval()
    return model


def onnx_providers() -> List[str]:
    """Provider priority: CUDA, then DirectML, then CPU."""
    available = ort.get_available_providers()
    providers = [p for p in ("CUDAExecutionProvider", "DmlExecutionProvider") if p in available]
    providers.append("CPUExecutionProvider")
    return providers


def create_onnx_session(data: bytes) -> ort.InferenceSession:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    session = ort.InferenceSession(data, sess_options=options, providers=onnx_providers())
    logger.info(
        "ONNX session ready provider=%s inputs=%s outputs=%s",
        session.get_providers()[0],
        [i.name for i in session.get_inputs()],
        [o.name for o in session.get_outputs()],
    )
    return session
