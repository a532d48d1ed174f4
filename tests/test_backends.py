"""Tests for the backend contract, the registry and both model variants."""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest
import torch

from bgremover.backends import BackendKind, BackendRegistry, BackendState
from bgremover.errors import InferError, InitError, ModelUnavailableError, NotInitializedError
from bgremover.general_backend import GeneralBackend
from bgremover.imaging import RasterImage
from bgremover.portrait_backend import PortraitBackend

from conftest import FakeBackend, make_raster


def _half_red(width: int, height: int) -> RasterImage:
    rgb = np.zeros((height, width, 3), dtype=np.uint8)
    rgb[:, : width // 2, 0] = 255
    rgb[..., 1] = 77
    return RasterImage.from_rgb(rgb)


class RedChannelSession:
    """Stands in for an ONNX session: foreground wherever red is bright."""

    def __init__(self):
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input.1")]

    def get_outputs(self):
        return [SimpleNamespace(name="d0"), SimpleNamespace(name="d1")]

    def run(self, names, feeds):
        self.feeds.append(feeds)
        x = feeds["input.1"]
        d0 = (x[:, :1] > 0.5).astype(np.float32)
        return [d0]


class RedChannelMatte(torch.nn.Module):
    """MODNet-shaped output: (semantic, detail, matte) with matte = red in [0, 1]."""

    def forward(self, x):
        red = x[:, :1]
        return red, red, (red + 1.0) / 2.0


def test_lifecycle_transitions() -> None:
    backend = FakeBackend()
    assert backend.state is BackendState.UNINITIALIZED
    assert not backend.is_initialized()

    backend.initialize()
    backend.initialize()

    assert backend.is_initialized()
    assert backend.load_calls == 1

    backend.cleanup()
    assert backend.state is BackendState.UNINITIALIZED
    assert backend.release_calls == 1
    with pytest.raises(NotInitializedError):
        backend.remove_background(make_raster(4, 4))


def test_remove_background_before_init() -> None:
    with pytest.raises(NotInitializedError):
        FakeBackend().remove_background(make_raster(4, 4))


def test_init_failure_is_wrapped_and_resets_state() -> None:
    backend = FakeBackend(fail_init=True)

    with pytest.raises(InitError):
        backend.initialize()

    assert backend.state is BackendState.UNINITIALIZED


def test_segment_failure_is_wrapped() -> None:
    backend = FakeBackend(fail_segment=True)
    backend.initialize()

    with pytest.raises(InferError):
        backend.remove_background(make_raster(4, 4))


def test_remove_background_quantizes_probability() -> None:
    backend = FakeBackend(probability=0.5)
    backend.initialize()
    image = make_raster(6, 3)

    out = backend.remove_background(image)

    assert out.size == image.size
    assert np.array_equal(out.rgb, image.rgb)
    assert (out.alpha == 128).all()


def test_registry_hands_out_one_instance_per_kind() -> None:
    built = []

    def factory(kind):
        def build():
            backend = FakeBackend(kind)
            built.append(backend)
            return backend

        return build

    registry = BackendRegistry({k: factory(k) for k in BackendKind})

    assert registry.peek("portrait") is None
    portrait = registry.get("portrait")
    assert registry.get(BackendKind.PORTRAIT) is portrait
    general = registry.get("GENERAL")
    assert general is not portrait
    assert len(built) == 2

    portrait.initialize()
    assert portrait.is_initialized()
    assert not general.is_initialized()

    registry.cleanup_all()
    assert not portrait.is_initialized()


def test_unknown_kind() -> None:
    with pytest.raises(ValueError):
        BackendKind.parse("sam")


def test_general_backend_runs_fixed_square_pipeline(settings, monkeypatch) -> None:
    session = RedChannelSession()
    monkeypatch.setattr("bgremover.general_backend.load_model_bytes", lambda *a, **k: b"weights")
    monkeypatch.setattr("bgremover.general_backend.create_onnx_session", lambda data: session)
    backend = GeneralBackend(settings=settings)
    backend.initialize()
    image = _half_red(200, 90)

    out = backend.remove_background(image)

    assert session.feeds[0]["input.1"].shape == (1, 3, 320, 320)
    assert out.size == (200, 90)
    assert np.array_equal(out.rgb, image.rgb)
    assert (out.alpha[:, :90] == 255).all()
    assert (out.alpha[:, 110:] == 0).all()


def test_general_backend_without_model(settings) -> None:
    backend = GeneralBackend(settings=settings)

    with pytest.raises(ModelUnavailableError):
        backend.initialize()
    assert not backend.is_initialized()


def test_portrait_backend_runs_at_native_resolution(settings, monkeypatch) -> None:
    monkeypatch.setattr("bgremover.portrait_backend.load_model_bytes", lambda *a, **k: b"weights")
    monkeypatch.setattr("bgremover.portrait_backend.load_torchscript", lambda data, device: RedChannelMatte())
    backend = PortraitBackend(settings=settings)
    backend.initialize()
    image = _half_red(64, 32)

    out = backend.remove_background(image)

    assert out.size == (64, 32)
    assert np.array_equal(out.rgb, image.rgb)
    assert (out.alpha[:, :32] == 255).all()
    assert (out.alpha[:, 32:] == 0).all()


def test_portrait_backend_odd_sizes(settings, monkeypatch) -> None:
    monkeypatch.setattr("bgremover.portrait_backend.load_model_bytes", lambda *a, **k: b"weights")
    monkeypatch.setattr("bgremover.portrait_backend.load_torchscript", lambda data, device: RedChannelMatte())
    backend = PortraitBackend(settings=settings)
    backend.initialize()

    out = backend.remove_background(make_raster(51, 29))

    assert out.size == (51, 29)
    backend.cleanup()
    assert not backend.is_initialized()
