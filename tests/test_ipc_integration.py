"""End-to-end tests: ClientChannel ↔ shared directory ↔ ServerLoop.

A background task ticks the server every 10 ms, the way host repaints
would, while the client talks to it through real files.
"""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from moho_bridge.config import BridgeConfig
from moho_bridge.exceptions import RPCError, ServerNotRunningError
from moho_bridge.ipc.client import ClientChannel
from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.server import ServerLoop

from .conftest import FakeHost


@pytest_asyncio.fixture
async def client(pumped_server: ServerLoop, fast_config: BridgeConfig) -> ClientChannel:
    channel = ClientChannel(fast_config)
    await channel.connect()
    return channel


class TestRoundTrip:
    """Test single calls through the whole stack."""

    @pytest.mark.asyncio
    async def test_simple_call(self, client: ClientChannel, host: FakeHost) -> None:
        result = await client.call("document.getInfo")

        assert result == {"name": "scene.moho", "fps": 24, "frame": 0}
        assert host.calls == [("document.getInfo", {})]

    @pytest.mark.asyncio
    async def test_mutation_is_visible_to_later_calls(self, client: ClientChannel) -> None:
        await client.call("document.setFrame", {"frame": 42})
        result = await client.call("document.getInfo")

        assert isinstance(result, dict)
        assert result["frame"] == 42

    @pytest.mark.asyncio
    async def test_screenshot_outside_batch(self, client: ClientChannel) -> None:
        result = await client.call("document.screenshot", {"width": 320})
        assert result == {"success": True, "filePath": "/tmp/frame.png"}

    @pytest.mark.asyncio
    async def test_domain_error(self, client: ClientChannel) -> None:
        with pytest.raises(RPCError) as exc_info:
            await client.call("document.setFrame", {"frame": -3})

        assert exc_info.value.code == ErrorCode.INVALID_FRAME

    @pytest.mark.asyncio
    async def test_unknown_method(self, client: ClientChannel, host: FakeHost) -> None:
        with pytest.raises(RPCError) as exc_info:
            await client.call("os.execute", {"cmd": "rm -rf /"})

        assert exc_info.value.code == ErrorCode.METHOD_NOT_FOUND
        assert host.calls == []

    @pytest.mark.asyncio
    async def test_invalid_params(self, client: ClientChannel) -> None:
        with pytest.raises(RPCError) as exc_info:
            await client.call("layer.getProperties", {"layerId": "1"})

        assert exc_info.value.code == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_handler_crash(self, client: ClientChannel) -> None:
        with pytest.raises(RPCError) as exc_info:
            await client.call("layer.getProperties", {"layerId": 99})

        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_directory_is_clean_afterwards(
        self, client: ClientChannel, ipc_dir: Path
    ) -> None:
        await client.call("document.getInfo")
        assert sorted(p.name for p in ipc_dir.iterdir()) == ["status.json"]


class TestConcurrentCalls:
    """Test many in-flight calls against the per-tick cap."""

    @pytest.mark.asyncio
    async def test_all_calls_answered_correctly(self, client: ClientChannel) -> None:
        results = await asyncio.gather(
            *(client.call("layer.getProperties", {"layerId": n}) for n in range(1, 7))
        )

        assert results == [{"id": n, "name": f"Layer {n}"} for n in range(1, 7)]


class TestBatchRoundTrip:
    """Test batch.execute through the whole stack."""

    @pytest.mark.asyncio
    async def test_stop_on_error(self, client: ClientChannel, host: FakeHost) -> None:
        result = await client.batch(
            [
                {"method": "document.setFrame", "params": {"frame": 7}},
                {"method": "layer.getProperties", "params": {"layerId": 99}},
                {"method": "document.getInfo"},
            ],
            stop_on_error=True,
        )

        assert result["summary"] == {
            "total": 3,
            "executed": 2,
            "succeeded": 1,
            "failed": 1,
            "stoppedEarly": True,
        }
        results = result["results"]
        assert isinstance(results, list)
        assert results[2]["error"]["code"] == ErrorCode.SKIPPED
        assert host.frame == 7

    @pytest.mark.asyncio
    async def test_screenshot_refused_in_batch(self, client: ClientChannel) -> None:
        result = await client.batch([{"method": "document.screenshot"}])

        results = result["results"]
        assert isinstance(results, list)
        assert results[0]["success"] is False
        assert results[0]["error"]["code"] == ErrorCode.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_non_object_entry_fails_only_its_slot(
        self, client: ClientChannel, host: FakeHost
    ) -> None:
        result = await client.batch([{"method": "document.getInfo"}, "oops"])

        results = result["results"]
        assert isinstance(results, list)
        assert results[0]["success"] is True
        assert results[1]["success"] is False
        assert results[1]["error"]["code"] == ErrorCode.INVALID_REQUEST
        assert host.calls == [("document.getInfo", {})]

    @pytest.mark.asyncio
    async def test_non_boolean_flag_is_rejected_by_server(self, client: ClientChannel) -> None:
        with pytest.raises(RPCError) as exc_info:
            await client.batch([{"method": "document.getInfo"}], stop_on_error="false")

        assert exc_info.value.code == ErrorCode.INVALID_PARAMS
        assert exc_info.value.error_message == "stopOnError must be a boolean"


class TestShutdown:
    """Test behaviour once the host stops the server."""

    @pytest.mark.asyncio
    async def test_new_clients_cannot_connect(
        self, pumped_server: ServerLoop, fast_config: BridgeConfig
    ) -> None:
        pumped_server.stop()

        with pytest.raises(ServerNotRunningError):
            await ClientChannel(fast_config).connect()
