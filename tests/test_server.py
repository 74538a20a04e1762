"""Tests for the callback HTTP server (aiohttp)."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import pytest
from aiohttp.test_utils import TestClient, TestServer

from callback_tunnel.events import CallbackEvent, HandlerEvents, LogEvent
from callback_tunnel.server import CALLBACK_RESPONSE_TEXT, ROOT_TEXT, CallbackServer

_FORM = {"Content-Type": "application/x-www-form-urlencoded"}
_JSON = {"Content-Type": "application/json"}


class _Recorder:
    def __init__(self, events: HandlerEvents) -> None:
        self.callbacks: list[CallbackEvent] = []
        self.logs: list[LogEvent] = []
        events.callback.subscribe(self.callbacks.append)
        events.log.subscribe(self.logs.append)


@pytest.fixture
def events() -> HandlerEvents:
    return HandlerEvents()


@pytest.fixture
def recorder(events: HandlerEvents) -> _Recorder:
    return _Recorder(events)


async def _client_for(server: CallbackServer) -> TestClient[Any, Any]:
    client = TestClient(TestServer(server.app))
    await client.start_server()
    return client


@pytest.fixture
async def client(events: HandlerEvents) -> AsyncIterator[TestClient[Any, Any]]:
    test_client = await _client_for(CallbackServer(events))
    yield test_client
    await test_client.close()


# ---------------------------------------------------------------------------
# Root route
# ---------------------------------------------------------------------------


class TestRootRoute:
    async def test_get_root_returns_instructions(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        resp = await client.get("/")
        assert resp.status == 200
        assert await resp.text() == ROOT_TEXT
        assert recorder.callbacks == []


# ---------------------------------------------------------------------------
# Body normalization
# ---------------------------------------------------------------------------


class TestCallbackBody:
    async def test_form_body_converted_to_dict(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        resp = await client.post("/callback", data="a=1&b=two", headers=_FORM)

        assert resp.status == 200
        assert len(recorder.callbacks) == 1
        assert recorder.callbacks[0].body == {"a": "1", "b": "two"}
        assert recorder.logs == [
            LogEvent("info", "application/x-www-form-urlencoded received, so converting to JSON")
        ]

    async def test_twilio_style_status_callback(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        body = "MessageSid=SM123&MessageStatus=delivered&To=%2B15551234567"
        await client.post("/callback", data=body, headers=_FORM)
        assert recorder.callbacks[0].body == {
            "MessageSid": "SM123",
            "MessageStatus": "delivered",
            "To": "+15551234567",
        }

    async def test_repeated_form_key_becomes_list(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback", data="tag=a&tag=b&x=1", headers=_FORM)
        assert recorder.callbacks[0].body == {"tag": ["a", "b"], "x": "1"}

    async def test_json_body_passed_through(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        resp = await client.post("/callback", data='{"x":1}', headers=_JSON)

        assert resp.status == 200
        assert recorder.callbacks[0].body == {"x": 1}
        assert recorder.logs == []

    async def test_json_with_charset_parameter(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post(
            "/callback",
            data=json.dumps({"nested": {"ok": True}, "items": [1, 2]}),
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert recorder.callbacks[0].body == {"nested": {"ok": True}, "items": [1, 2]}

    async def test_malformed_json_still_emits(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        resp = await client.post("/callback", data="{not json", headers=_JSON)

        assert resp.status == 200
        assert await resp.text() == CALLBACK_RESPONSE_TEXT
        assert len(recorder.callbacks) == 1
        assert recorder.callbacks[0].body is None
        assert [e.level for e in recorder.logs] == ["warn"]

    async def test_other_content_type_passed_through_as_text(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback", data="<ping/>", headers={"Content-Type": "text/xml"})
        event = recorder.callbacks[0]
        assert event.body == "<ping/>"
        assert event.content_type == "text/xml"
        assert recorder.logs == []

    async def test_empty_body_is_none(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback")
        assert recorder.callbacks[0].body is None


# ---------------------------------------------------------------------------
# Query parameters
# ---------------------------------------------------------------------------


class TestQueryParameters:
    async def test_query_captured_with_json_body(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback?source=twilio&n=3", data='{"x":1}', headers=_JSON)
        assert recorder.callbacks[0].query_parameters == {"source": "twilio", "n": "3"}

    async def test_query_captured_with_form_body(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback?source=twilio&n=3", data="a=1", headers=_FORM)
        assert recorder.callbacks[0].query_parameters == {"source": "twilio", "n": "3"}

    async def test_query_captured_without_body(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback?source=twilio&n=3")
        assert recorder.callbacks[0].query_parameters == {"source": "twilio", "n": "3"}

    async def test_no_query_gives_empty_mapping(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback", data='{"x":1}', headers=_JSON)
        assert recorder.callbacks[0].query_parameters == {}

    async def test_repeated_query_key_keeps_last_value(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        await client.post("/callback?n=1&n=2")
        assert recorder.callbacks[0].query_parameters == {"n": "2"}


# ---------------------------------------------------------------------------
# Response contract
# ---------------------------------------------------------------------------


class TestResponseContract:
    @pytest.mark.parametrize(
        ("data", "headers"),
        [
            ('{"x":1}', _JSON),
            ("{broken", _JSON),
            ("a=1&b=two", _FORM),
            ("%%%", _FORM),
            ("plain", {"Content-Type": "text/plain"}),
            (b"\xff\xfe", {"Content-Type": "application/octet-stream"}),
        ],
    )
    async def test_always_200_with_fixed_body(
        self,
        client: TestClient[Any, Any],
        recorder: _Recorder,
        data: Any,
        headers: dict[str, str],
    ) -> None:
        resp = await client.post("/callback", data=data, headers=headers)
        assert resp.status == 200
        assert await resp.text() == CALLBACK_RESPONSE_TEXT
        assert len(recorder.callbacks) == 1

    async def test_raising_listener_does_not_change_response(
        self, events: HandlerEvents, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        def explode(_event: CallbackEvent) -> None:
            msg = "listener bug"
            raise RuntimeError(msg)

        events.callback.subscribe(explode)
        late: list[CallbackEvent] = []
        events.callback.subscribe(late.append)

        resp = await client.post("/callback", data='{"x":1}', headers=_JSON)

        assert resp.status == 200
        assert await resp.text() == CALLBACK_RESPONSE_TEXT
        assert len(recorder.callbacks) == 1
        assert len(late) == 1

    async def test_oversized_body_still_acknowledged(
        self, events: HandlerEvents, recorder: _Recorder
    ) -> None:
        client = await _client_for(CallbackServer(events, max_body_bytes=16))
        try:
            resp = await client.post("/callback", data="a=" + "x" * 100, headers=_FORM)
            assert resp.status == 200
            assert await resp.text() == CALLBACK_RESPONSE_TEXT
        finally:
            await client.close()

        assert recorder.callbacks[0].body is None
        assert recorder.logs[0].level == "error"

    async def test_one_event_per_request(
        self, client: TestClient[Any, Any], recorder: _Recorder
    ) -> None:
        for i in range(3):
            await client.post("/callback", data=json.dumps({"i": i}), headers=_JSON)
        assert [e.body for e in recorder.callbacks] == [{"i": 0}, {"i": 1}, {"i": 2}]


# ---------------------------------------------------------------------------
# Listen / close
# ---------------------------------------------------------------------------


class TestListen:
    async def test_listen_reports_bound_port(self, events: HandlerEvents) -> None:
        server = CallbackServer(events)
        port = await server.listen("127.0.0.1", 0)
        try:
            assert port > 0
            assert server.port == port
            assert server.is_listening
        finally:
            await server.close()
        assert server.port is None
        assert not server.is_listening

    async def test_close_when_not_listening_is_noop(self, events: HandlerEvents) -> None:
        await CallbackServer(events).close()

    async def test_listen_twice_rejected(self, events: HandlerEvents) -> None:
        server = CallbackServer(events)
        await server.listen("127.0.0.1", 0)
        try:
            with pytest.raises(RuntimeError, match="already listening"):
                await server.listen("127.0.0.1", 0)
        finally:
            await server.close()
