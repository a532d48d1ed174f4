"""Exception hierarchy shared by the pipeline, the backends and the orchestrator."""

from __future__ import annotations


class BackgroundRemovalError(Exception):
    """Base class for every failure surfaced by this package."""


class InitError(BackgroundRemovalError):
    """A backend could not reach the ready state."""


class ModelUnavailableError(InitError):
    """Neither the primary nor the fallback model source could be loaded."""


class CorruptModelError(InitError):
    """Fetched model bytes are too small or look like a pointer stub."""


class NotInitializedError(BackgroundRemovalError):
    """Inference was attempted before the backend was initialized."""


class InferError(BackgroundRemovalError):
    """The numeric pipeline failed while producing a mask."""


class DecodeError(BackgroundRemovalError, ValueError):
    """Input bytes are not a decodable image."""


class EncodeError(BackgroundRemovalError):
    """An image could not be serialized to the requested format."""


class OrchestratorBusyError(BackgroundRemovalError):
    """A removal request was submitted while another one is not finished."""
