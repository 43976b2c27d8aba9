"""Tests for request dispatch.

Tests cover:
- Gate order: allow-list, validation, handler lookup
- Handler failure conversion (raised and returned HandlerError, crashes)
- Raw message handling (parse errors, error envelopes, serialization)
"""

import json
from collections.abc import Mapping

import pytest

from moho_bridge.exceptions import RPCError
from moho_bridge.ipc import BATCH_METHOD
from moho_bridge.ipc.batch import BatchExecutor
from moho_bridge.ipc.codes import ErrorCode
from moho_bridge.ipc.dispatch import Dispatcher, create_dispatcher
from moho_bridge.ipc.protocol import encode_request
from moho_bridge.ipc.registry import HandlerRegistry
from moho_bridge.ipc.validator import FieldSpec, Validator

from .conftest import FakeHost


class TestDispatch:
    """Test direct dispatch of a single call."""

    def test_returns_handler_result(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        result = dispatcher.dispatch(host, "document.setFrame", {"frame": 12})

        assert result == {"success": True, "frame": 12}
        assert host.frame == 12

    def test_unknown_method(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "os.execute", {})

        assert exc_info.value.code == ErrorCode.METHOD_NOT_FOUND
        assert exc_info.value.error_message == "Method not found: os.execute"
        assert host.calls == []

    def test_invalid_params_never_reach_handler(
        self, dispatcher: Dispatcher, host: FakeHost
    ) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "layer.getProperties", {"layerId": "seven"})

        assert exc_info.value.code == ErrorCode.INVALID_PARAMS
        assert exc_info.value.error_message == (
            "Invalid parameter type for 'layerId': expected number, got string"
        )
        assert host.calls == []

    def test_allowed_but_unregistered(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "mesh.getShapes", {"layerId": 1})

        assert exc_info.value.code == ErrorCode.METHOD_NOT_FOUND
        assert exc_info.value.error_message == "No handler registered for: mesh.getShapes"

    def test_none_params_become_empty(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        dispatcher.dispatch(host, "document.getInfo", None)
        assert host.calls == [("document.getInfo", {})]

    def test_raised_handler_error_keeps_code(
        self, dispatcher: Dispatcher, host: FakeHost
    ) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "document.setFrame", {"frame": -1})

        assert exc_info.value.code == ErrorCode.INVALID_FRAME
        assert exc_info.value.error_message == "Invalid frame: -1"

    def test_returned_handler_error_is_a_failure(
        self, dispatcher: Dispatcher, host: FakeHost
    ) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "layer.getBones", {"layerId": 3})

        assert exc_info.value.code == ErrorCode.LAYER_NOT_FOUND
        assert exc_info.value.error_message == "Layer is not a bone layer"

    def test_crash_becomes_internal_error(
        self, dispatcher: Dispatcher, host: FakeHost, caplog: pytest.LogCaptureFixture
    ) -> None:
        with pytest.raises(RPCError) as exc_info:
            dispatcher.dispatch(host, "layer.getProperties", {"layerId": 99})

        error = exc_info.value
        assert error.code == ErrorCode.INTERNAL_ERROR
        assert error.error_message == "Handler error: attempt to index a nil value"
        assert error.data == {"exception": "RuntimeError"}
        assert "layer.getProperties" in caplog.text


class TestHandleMessage:
    """Test the raw payload to raw payload path used by the server loop."""

    def test_success_envelope(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        raw = dispatcher.handle_message(
            encode_request(4, "layer.getProperties", {"layerId": 2}), host
        )

        assert json.loads(raw) == {
            "jsonrpc": "2.0",
            "id": 4,
            "result": {"id": 2, "name": "Layer 2"},
        }

    def test_error_envelope_carries_request_id(
        self, dispatcher: Dispatcher, host: FakeHost
    ) -> None:
        raw = dispatcher.handle_message(encode_request(5, "os.execute"), host)

        response = json.loads(raw)
        assert response["id"] == 5
        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
        assert "result" not in response

    @pytest.mark.parametrize(
        "payload",
        [b"", b"{broken", b"[1]", b'{"id": 1, "method": "document.getInfo"}'],
    )
    def test_malformed_payload_is_parse_error(
        self, dispatcher: Dispatcher, host: FakeHost, payload: bytes
    ) -> None:
        response = json.loads(dispatcher.handle_message(payload, host))

        assert response["id"] is None
        assert response["error"]["code"] == ErrorCode.PARSE_ERROR
        assert host.calls == []

    def test_array_params_never_reach_handler(
        self, dispatcher: Dispatcher, host: FakeHost
    ) -> None:
        payload = b'{"jsonrpc": "2.0", "id": 4, "method": "document.setFrame", "params": [12]}'

        response = json.loads(dispatcher.handle_message(payload, host))

        assert response["error"]["code"] == ErrorCode.PARSE_ERROR
        assert "params must be an object" in response["error"]["message"]
        assert host.calls == []

    def test_non_serializable_result(self, host: FakeHost) -> None:
        registry = HandlerRegistry()
        registry.register("document.getInfo", lambda context, params: {"value": object()})
        dispatcher = create_dispatcher(registry)

        response = json.loads(
            dispatcher.handle_message(encode_request(1, "document.getInfo"), host)
        )

        assert response["id"] == 1
        assert response["error"]["code"] == ErrorCode.INTERNAL_ERROR
        assert response["error"]["message"].startswith(
            "Handler returned a non-serializable result"
        )

    def test_error_data_is_forwarded(self, dispatcher: Dispatcher, host: FakeHost) -> None:
        response = json.loads(
            dispatcher.handle_message(
                encode_request(8, "layer.getProperties", {"layerId": 99}), host
            )
        )
        assert response["error"]["data"] == {"exception": "RuntimeError"}


class TestCreateDispatcher:
    """Test the dispatcher factory."""

    def test_registers_batch_executor(self) -> None:
        dispatcher = create_dispatcher()

        executor = dispatcher.registry.lookup(BATCH_METHOD)
        assert isinstance(executor, BatchExecutor)
        assert executor.max_operations == 50

    def test_custom_validator_and_limit(self) -> None:
        registry = HandlerRegistry()

        def echo(context: object, params: Mapping[str, object]) -> object:
            return params["text"]

        registry.register("echo.say", echo)
        validator = Validator(
            {"echo.say": [FieldSpec("text", "string")], BATCH_METHOD: []}
        )

        dispatcher = create_dispatcher(registry, validator, max_batch_operations=3)

        assert dispatcher.dispatch(None, "echo.say", {"text": "hi"}) == "hi"
        executor = dispatcher.registry.lookup(BATCH_METHOD)
        assert isinstance(executor, BatchExecutor)
        assert executor.max_operations == 3
