"""
Segmentation backend contract and the per-kind backend registry.

Every backend exposes the same four operations; the orchestrator only ever
talks to this contract. The registry hands out at most one instance per
backend kind so a loaded model is shared by every request for that kind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
import logging
from threading import Lock, RLock
from typing import Callable, Dict, Mapping, Optional, Union

from .errors import InferError, InitError, NotInitializedError
from .imaging import RasterImage
from .model_loader import ProgressCallback

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    PORTRAIT = "portrait"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Union["BackendKind", str]) -> "BackendKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"backend must be one of portrait | general, got {value!r}") from exc


class BackendState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class SegmentationBackend(ABC):
    """
    Owns one model session and turns an RGBA image into a masked copy.

    Subclasses implement `_load`, `_segment` and `_release`; locking, state
    transitions and error wrapping live here.
    """

    kind: BackendKind

    def __init__(self) -> None:
        self._state = BackendState.UNINITIALIZED
        self._lock = RLock()

    @property
    def state(self) -> BackendState:
        return self._state

    def is_initialized(self) -> bool:
        return self._state is BackendState.READY

    def initialize(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """Acquire the model. Safe to call repeatedly; a no-op once ready."""
        with self._lock:
            if self._state is BackendState.READY:
                return
            self._state = BackendState.INITIALIZING
            try:
                self._load(progress_callback)
            except InitError:
                self._state = BackendState.UNINITIALIZED
                raise
            except Exception as exc:  # noqa: BLE001
                self._state = BackendState.UNINITIALIZED
                raise InitError(f"Failed to initialize {self.kind.value} backend: {exc}") from exc
            self._state = BackendState.READY
            logger.info("%s backend ready", self.kind.value)

    def remove_background(self, image: RasterImage) -> RasterImage:
        """Return a copy of `image` with alpha set to the foreground probability."""
        with self._lock:
            if self._state is not BackendState.READY:
                raise NotInitializedError(f"{self.kind.value} backend is not initialized")
            try:
                result = self._segment(image)
            except Exception as exc:  # noqa: BLE001
                raise InferError(f"{self.kind.value} backend failed to segment image: {exc}") from exc
        if result.size != image.size:
            raise InferError(f"Backend returned {result.size}, expected {image.size}")
        return result

    def cleanup(self) -> None:
        with self._lock:
            if self._state is BackendState.UNINITIALIZED:
                return
            self._release()
            self._state = BackendState.UNINITIALIZED
            logger.info("%s backend released", self.kind.value)

    @abstractmethod
    def _load(self, progress_callback: Optional[ProgressCallback]) -> None:
        ...

    @abstractmethod
    def _segment(self, image: RasterImage) -> RasterImage:
        ...

    @abstractmethod
    def _release(self) -> None:
        ...


BackendFactory = Callable[[], SegmentationBackend]


def _default_factories() -> Dict[BackendKind, BackendFactory]:
    from .general_backend import GeneralBackend
    from .portrait_backend import PortraitBackend

    return {
        BackendKind.PORTRAIT: PortraitBackend,
        BackendKind.GENERAL: GeneralBackend,
    }


class BackendRegistry:
    """Lazily constructs and hands out one backend instance per kind."""

    def __init__(self, factories: Optional[Mapping[BackendKind, BackendFactory]] = None):
        self._factories: Dict[BackendKind, BackendFactory] = dict(
            factories if factories is not None else _default_factories()
        )
        self._instances: Dict[BackendKind, SegmentationBackend] = {}
        self._lock = Lock()

    def get(self, kind: Union[BackendKind, str]) -> SegmentationBackend:
        kind = BackendKind.parse(kind)
        backend = self._instances.get(kind)
        if backend is not None:
            return backend

        with self._lock:
            backend = self._instances.get(kind)
            if backend is None:
                if kind not in self._factories:
                    raise KeyError(f"No backend registered for {kind.value}")
                backend = self._factories[kind]()
                self._instances[kind] = backend
        return backend

    def peek(self, kind: Union[BackendKind, str]) -> Optional[SegmentationBackend]:
        """Return the instance for `kind` if one was already constructed."""
        return self._instances.get(BackendKind.parse(kind))

    def cleanup_all(self) -> None:
        with self._lock:
            instances = list(self._instances.values())
        for backend in instances:
            backend.cleanup()


_REGISTRY: Optional[BackendRegistry] = None
_REGISTRY_LOCK = Lock()


def get_registry() -> BackendRegistry:
    """Return the process-default registry, created on first access."""
    global _REGISTRY
    if _REGISTRY is not None:
        return _REGISTRY
    with _REGISTRY_LOCK:
        if _REGISTRY is None:
            _REGISTRY = BackendRegistry()
    return _REGISTRY
