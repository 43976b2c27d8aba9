"""Shared test fixtures and helpers for moho_bridge tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator, Mapping
from pathlib import Path

import pytest
import pytest_asyncio

from moho_bridge.config import BridgeConfig
from moho_bridge.exceptions import HandlerError
from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.dispatch import Dispatcher, create_dispatcher
from moho_bridge.ipc.keepalive import NullKeepAlive
from moho_bridge.ipc.registry import HandlerRegistry
from moho_bridge.ipc.server import ServerLoop


class FakeHost:
    """Stands in for the MOHO ScriptInterface: records every handler call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, object]]] = []
        self.frame = 0


def _get_info(host: FakeHost, params: Mapping[str, object]) -> dict[str, object]:
    host.calls.append(("document.getInfo", dict(params)))
    return {"name": "scene.moho", "fps": 24, "frame": host.frame}


def _set_frame(host: FakeHost, params: Mapping[str, object]) -> dict[str, object]:
    host.calls.append(("document.setFrame", dict(params)))
    frame = params["frame"]
    assert isinstance(frame, int | float)
    if frame < 0:
        raise HandlerError(f"Invalid frame: {frame}", code=ErrorCode.INVALID_FRAME)
    host.frame = int(frame)
    return {"success": True, "frame": host.frame}


def _get_layer(host: FakeHost, params: Mapping[str, object]) -> dict[str, object]:
    host.calls.append(("layer.getProperties", dict(params)))
    if params["layerId"] == 99:
        raise RuntimeError("attempt to index a nil value")
    return {"id": params["layerId"], "name": f"Layer {params['layerId']}"}


def _get_bones(host: FakeHost, params: Mapping[str, object]) -> HandlerError:
    host.calls.append(("layer.getBones", dict(params)))
    return HandlerError("Layer is not a bone layer", code=ErrorCode.LAYER_NOT_FOUND)


def _screenshot(host: FakeHost, params: Mapping[str, object]) -> dict[str, object]:
    host.calls.append(("document.screenshot", dict(params)))
    return {"success": True, "filePath": "/tmp/frame.png"}


def build_registry() -> HandlerRegistry:
    """Registry with a handful of fake domain handlers."""
    registry = HandlerRegistry()
    registry.register("document.getInfo", _get_info)
    registry.register("document.setFrame", _set_frame)
    registry.register("layer.getProperties", _get_layer)
    registry.register("layer.getBones", _get_bones)
    registry.register("document.screenshot", _screenshot)
    return registry


class RecordingKeepAlive:
    """Keep-alive that counts start and stop calls."""

    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1


@pytest.fixture(autouse=True)
def no_repaint_helper(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep channels built in tests from spawning the Windows repaint helper."""
    monkeypatch.setattr(
        "moho_bridge.ipc.client.default_keep_alive", lambda ipc_dir: NullKeepAlive()
    )


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def dispatcher() -> Dispatcher:
    return create_dispatcher(build_registry())


@pytest.fixture
def ipc_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "moho-mcp"
    directory.mkdir()
    return directory


@pytest.fixture
def fast_config(ipc_dir: Path) -> BridgeConfig:
    """Config with short polling and timeouts so tests stay quick."""
    return BridgeConfig(
        ipc_dir=ipc_dir,
        poll_interval=0.01,
        request_timeout=2.0,
        render_timeout=3.0,
        batch_timeout_per_op=0.1,
    )


@pytest.fixture
def server(dispatcher: Dispatcher, ipc_dir: Path) -> Iterator[ServerLoop]:
    loop = ServerLoop(dispatcher, ipc_dir)
    loop.start()
    yield loop
    loop.stop()


@pytest_asyncio.fixture
async def pumped_server(server: ServerLoop, host: FakeHost) -> AsyncIterator[ServerLoop]:
    """Server ticked every 10 ms by a background task, like host repaints."""

    async def pump() -> None:
        while True:
            server.tick(host)
            await asyncio.sleep(0.01)

    task = asyncio.create_task(pump())
    try:
        yield server
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
