"""
On-device cache for model weights.

Weights are stored as opaque blobs keyed by their source URL so a model is
downloaded once and reused across sessions.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
import tempfile
from typing import Optional, Union

from .errors import CorruptModelError

logger = logging.getLogger(__name__)

# Heads of files that are served in place of the real weights: Git LFS
# pointers and HTML error/landing pages.
STUB_SIGNATURES = (
    b"version https://git-lfs.github.com/spec",
    b"<!doctype html",
    b"<html",
)


def validate_model_bytes(data: bytes, min_size: int, source: str = "<memory>") -> bytes:
    """Reject buffers that cannot be real model weights."""
    if len(data) < min_size:
        raise CorruptModelError(
            f"Model from {source} is {len(data)} bytes, below the {min_size} byte minimum"
        )
    head = data[:64].lstrip().lower()
    for signature in STUB_SIGNATURES:
        if head.startswith(signature):
            raise CorruptModelError(f"Model from {source} is a pointer stub, not weights")
    return data


class ModelCache:
    """File-per-key blob store under `directory`."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.bin"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, key: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Cached model %s (%d bytes)", key, len(data))

    def has(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
