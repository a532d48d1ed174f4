"""
High-level background removal pipeline.

`RemovalOrchestrator` sequences one request at a time:
bytes in -> decode -> backend init -> segmentation -> optional edge
softening -> encoded original + processed images out, publishing status and
progress events along the way. `process_image_bytes` wraps it for one-shot
callers such as the local runner script.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
import logging
from threading import RLock
from typing import Callable, List, Optional, Tuple, Union

from . import config
from .backends import BackendKind, BackendRegistry, get_registry
from .errors import OrchestratorBusyError
from .imaging import (
    Color,
    ImageFormat,
    RasterImage,
    composite_over_color,
    decode_image,
    encode_image,
    parse_color,
)
from .model_loader import ProgressCallback
from .postprocessing import soften_edges

logger = logging.getLogger(__name__)

# Caller-visible progress checkpoints.
DOWNLOAD_RANGE = 30.0
UNKNOWN_TOTAL_STEP = 0.5
UNKNOWN_TOTAL_CAP = 25.0
MODEL_READY = 35.0
PROCESSING_STARTED = 40.0
IMAGE_LOADED = 60.0
SEGMENTED = 80.0
SOFTENED = 90.0
DONE = 100.0


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class RemovalOptions:
    backend: Optional[Union[BackendKind, str]] = None
    format: Optional[Union[ImageFormat, str]] = None
    quality: Optional[float] = None  # 0-1, lossy formats only
    soften_edges: bool = False
    soften_radius: float = 0.0
    background_color: Optional[Union[str, Color]] = None  # None/"transparent" keeps alpha


@dataclass(frozen=True)
class ProcessedImage:
    original: RasterImage
    processed: RasterImage
    original_encoded: bytes
    processed_encoded: bytes
    width: int
    height: int
    format: ImageFormat


@dataclass(frozen=True)
class ProgressEvent:
    generation: int
    status: ProcessingStatus
    progress: float
    message: Optional[str] = None


Listener = Callable[[ProgressEvent], None]


class RemovalOrchestrator:
    """
    Runs at most one removal request at a time against the backend registry.

    Every request gets a generation number; `reset()` bumps it so the result
    of a request that was still running can no longer change state.
    """

    def __init__(
        self,
        registry: Optional[BackendRegistry] = None,
        settings: Optional[config.Settings] = None,
    ):
        self._registry = registry or get_registry()
        self._settings = settings or config.get_settings()
        self._lock = RLock()
        self._listeners: List[Listener] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._generation = 0
        self._status = ProcessingStatus.IDLE
        self._progress = 0.0
        self._error: Optional[str] = None
        self._result: Optional[ProcessedImage] = None

    @property
    def status(self) -> ProcessingStatus:
        return self._status

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def result(self) -> Optional[ProcessedImage]:
        return self._result

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a progress listener; returns a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def process(self, image_bytes: bytes, options: Optional[RemovalOptions] = None) -> ProcessedImage:
        """Run a request in the calling thread. Raises on failure."""
        generation = self._begin()
        return self._run(generation, image_bytes, options or RemovalOptions())

    def submit(self, image_bytes: bytes, options: Optional[RemovalOptions] = None) -> "Future[ProcessedImage]":
        """Run a request on the worker thread and return its future."""
        generation = self._begin()
        return self._worker().submit(self._run, generation, image_bytes, options or RemovalOptions())

    def reset(self) -> None:
        """Back to idle, discarding the previous result or error."""
        with self._lock:
            self._generation += 1
            self._status = ProcessingStatus.IDLE
            self._progress = 0.0
            self._error = None
            self._result = None
            self._emit()

    def cleanup(self) -> None:
        """Release every model session held by the registry."""
        self._registry.cleanup_all()

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _worker(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                # A single worker queues requests so two never share a backend session.
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bgremover")
            return self._executor

    def _begin(self) -> int:
        with self._lock:
            if self._status is not ProcessingStatus.IDLE:
                raise OrchestratorBusyError(
                    f"Cannot start a request while {self._status.value}; call reset() first"
                )
            self._generation += 1
            self._status = ProcessingStatus.LOADING
            self._progress = 0.0
            self._error = None
            self._result = None
            self._emit()
            return self._generation

    def _emit(self, message: Optional[str] = None) -> None:
        event = ProgressEvent(self._generation, self._status, self._progress, message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Progress listener failed")

    def _advance(self, generation: int, progress: float, status: Optional[ProcessingStatus] = None) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if status is not None:
                self._status = status
            self._progress = max(self._progress, min(progress, DONE))
            self._emit()

    def _download_progress(self, generation: int) -> ProgressCallback:
        def on_progress(loaded: int, total: int) -> None:
            if total > 0:
                value = min(loaded / total, 1.0) * DOWNLOAD_RANGE
            else:
                value = min(self._progress + UNKNOWN_TOTAL_STEP, UNKNOWN_TOTAL_CAP)
            self._advance(generation, value)

        return on_progress

    def _finish(self, generation: int, result: ProcessedImage) -> None:
        with self._lock:
            if generation != self._generation:
                logger.info("Discarding stale result for request %d", generation)
                return
            self._result = result
            self._status = ProcessingStatus.COMPLETED
            self._emit()

    def _fail(self, generation: int, exc: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._error = str(exc) or exc.__class__.__name__
            self._status = ProcessingStatus.ERROR
            self._emit(self._error)

    def _resolve_output(self, options: RemovalOptions) -> Tuple[ImageFormat, float]:
        fmt = ImageFormat((options.format or self._settings.default_format).lower())
        quality = self._settings.default_quality if options.quality is None else float(options.quality)
        if not 0.0 <= quality <= 1.0:
            raise ValueError(f"quality must be within [0, 1], got {quality}")
        return fmt, quality

    def _run(self, generation: int, image_bytes: bytes, options: RemovalOptions) -> ProcessedImage:
        try:
            kind = BackendKind.parse(options.backend or self._settings.default_backend)
            fmt, quality = self._resolve_output(options)
            background = parse_color(options.background_color)

            image = decode_image(image_bytes)

            backend = self._registry.get(kind)
            if not backend.is_initialized():
                logger.info("Initializing %s backend", kind.value)
                backend.initialize(self._download_progress(generation))
                self._advance(generation, MODEL_READY)

            self._advance(generation, PROCESSING_STARTED, ProcessingStatus.PROCESSING)
            self._advance(generation, IMAGE_LOADED)

            processed = backend.remove_background(image)
            self._advance(generation, SEGMENTED)

            if options.soften_edges and options.soften_radius > 0:
                processed = soften_edges(processed, options.soften_radius)
                self._advance(generation, SOFTENED)

            if background is not None:
                processed = composite_over_color(processed, background)

            result = ProcessedImage(
                original=image,
                processed=processed,
                original_encoded=encode_image(image, ImageFormat.PNG),
                processed_encoded=encode_image(processed, fmt, quality),
                width=image.width,
                height=image.height,
                format=fmt,
            )
            self._advance(generation, DONE)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Background removal failed: %s", exc)
            self._fail(generation, exc)
            raise

        self._finish(generation, result)
        return result


def process_image_bytes(
    image_bytes: bytes,
    options: Optional[RemovalOptions] = None,
    registry: Optional[BackendRegistry] = None,
) -> ProcessedImage:
    """
    Full pipeline from raw bytes to encoded images.

    Raises:
        BackgroundRemovalError: when the image or a model cannot be processed.
        ValueError: when options are invalid.
    """
    return RemovalOrchestrator(registry=registry).process(image_bytes, options)
