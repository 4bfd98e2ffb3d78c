"""Tests for the focus handler."""

import asyncio
from pathlib import Path

import pytest

from conftest import FakeConnector, FakeProcessTable, FakeTransport, record
from zooming_kittens.config import ZoomMode, ZoomSettings
from zooming_kittens.errors import ProtocolError
from zooming_kittens.event_stream import EventStream
from zooming_kittens.focus import FocusHandler
from zooming_kittens.models import BlurEvent, DestroyEvent, FocusEvent, WindowInfo
from zooming_kittens.process import ProcessIdentityResolver
from zooming_kittens.registry import ConnectionRegistry, RegistryConfig
from zooming_kittens.router import WindowEventRouter, app_id_is

PROCESSES = {
    1: (0, "systemd"),
    100: (1, "kitty"),
    200: (1, "kitty"),
    # window reported with the pid of a shell running inside kitty
    300: (1, "kitty"),
    301: (300, "sh"),
}


def focus(window_id, pid, app_id="kitty"):
    return FocusEvent(window_id=window_id, window=WindowInfo(id=window_id, app_id=app_id, pid=pid))


def blur(window_id, pid, app_id="kitty"):
    return BlurEvent(window_id=window_id, window=WindowInfo(id=window_id, app_id=app_id, pid=pid))


def sent(connector, pid):
    return [c.describe() for client in connector.clients_for(pid) for c in client.commands]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def handler(connector):
    return make_handler(connector)


def make_handler(connector, zoom=None, socket_resolver=None):
    registry = ConnectionRegistry(
        RegistryConfig(retry_delay=0, max_retries=1),
        connector=connector,
        socket_resolver=socket_resolver or (lambda pid: Path(f"/tmp/kitty-{pid}.sock")),
        pid_alive=lambda pid: pid in PROCESSES,
    )
    resolver = ProcessIdentityResolver(table=FakeProcessTable(PROCESSES), socket_check=None)
    return FocusHandler(registry, resolver, zoom or ZoomSettings(step=6))


class TestFocusBlur:
    @pytest.mark.asyncio
    async def test_focus_then_blur(self, handler, connector):
        await handler.on_focus(focus(1, 100))
        await handler.on_blur(blur(1, 100))

        assert sent(connector, 100) == ["set-font-size +6", "set-font-size -6"]
        assert handler.zoomed == {}

    @pytest.mark.asyncio
    async def test_reported_pid_is_resolved(self, handler, connector):
        await handler.on_focus(focus(1, 301))

        assert sent(connector, 300) == ["set-font-size +6"]
        assert handler.zoomed == {300: 1}

    @pytest.mark.asyncio
    async def test_repeated_focus_zooms_once(self, handler, connector):
        await handler.on_focus(focus(1, 100))
        await handler.on_focus(focus(1, 100))

        assert sent(connector, 100) == ["set-font-size +6"]

    @pytest.mark.asyncio
    async def test_missing_blur_zooms_previous_out(self, handler, connector):
        await handler.on_focus(focus(1, 100))
        await handler.on_focus(focus(2, 200))

        assert sent(connector, 100) == ["set-font-size +6", "set-font-size -6"]
        assert sent(connector, 200) == ["set-font-size +6"]
        assert handler.zoomed == {200: 2}

    @pytest.mark.asyncio
    async def test_blur_of_unzoomed_window_sends_nothing(self, handler, connector):
        await handler.on_blur(blur(1, 100))

        assert connector.attempts == []

    @pytest.mark.asyncio
    async def test_destroy_forgets_without_commands(self, handler, connector):
        await handler.on_focus(focus(1, 100))

        handler.on_lifecycle(DestroyEvent(window_id=1))
        await handler.on_blur(blur(1, 100))

        assert sent(connector, 100) == ["set-font-size +6"]
        assert handler.zoomed == {}

    @pytest.mark.asyncio
    async def test_destroy_of_other_window_keeps_state(self, handler):
        await handler.on_focus(focus(1, 100))

        handler.on_lifecycle(DestroyEvent(window_id=9))

        assert handler.zoomed == {100: 1}


class TestNoOps:
    @pytest.mark.asyncio
    async def test_missing_pid(self, handler, connector):
        await handler.on_focus(focus(1, None))

        assert connector.attempts == []

    @pytest.mark.asyncio
    async def test_unresolvable_pid(self, handler, connector):
        await handler.on_focus(focus(1, 999))

        assert connector.attempts == []
        assert handler.zoomed == {}

    @pytest.mark.asyncio
    async def test_connection_failure_is_not_recorded_as_zoomed(self):
        connector = FakeConnector(failures=10)
        handler = make_handler(connector)

        await handler.on_focus(focus(1, 100))

        assert handler.zoomed == {}
        assert handler.failures == 1

    @pytest.mark.asyncio
    async def test_missing_socket(self, connector):
        handler = make_handler(connector, socket_resolver=lambda pid: None)

        await handler.on_focus(focus(1, 100))

        assert connector.attempts == []
        assert handler.failures == 1

    @pytest.mark.asyncio
    async def test_rejected_command(self, handler, connector):
        conn = await handler.registry.get_or_create(100)
        conn.client.fail_next.append(ProtocolError("Remote control is disabled", pid=100))

        await handler.on_focus(focus(1, 100))

        assert handler.zoomed == {}
        assert handler.failures == 1


class TestZoomModes:
    def test_additive(self):
        handler = make_handler(FakeConnector(), ZoomSettings(mode=ZoomMode.ADDITIVE, step=4))

        assert handler.zoom_in_command().payload == {"size": 4.0, "increment_op": "+"}
        assert handler.zoom_out_command().payload == {"size": 4.0, "increment_op": "-"}

    def test_multiplicative(self):
        handler = make_handler(FakeConnector(), ZoomSettings(mode=ZoomMode.MULTIPLICATIVE, factor=1.5))

        assert handler.zoom_in_command().payload == {"size": 1.5, "increment_op": "*"}
        assert handler.zoom_out_command().payload == {"size": 1.5, "increment_op": "/"}

    def test_absolute(self):
        handler = make_handler(FakeConnector(), ZoomSettings(mode=ZoomMode.ABSOLUTE, target=18))

        assert handler.zoom_in_command().payload == {"size": 18.0, "increment_op": ""}
        assert handler.zoom_out_command().payload == {"size": 0, "increment_op": ""}


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_stream_to_kitty(self, handler, connector):
        records = [
            record("create", 1, pid=100),
            record("focus", 1, pid=100),
            record("focus", 2, app_id="firefox", pid=555),
            record("blur", 1, pid=100),
            record("destroy", 1),
        ]
        stream = EventStream(FakeTransport(records))
        await stream.connect()
        router = WindowEventRouter()
        handler.install(router, app_id_is("kitty"))

        await asyncio.gather(stream.run(), router.run(stream.subscribe()))

        assert sent(connector, 100) == ["set-font-size +6", "set-font-size -6"]
        assert connector.attempts == [100]
        assert handler.stats()["zoom_ins"] == 1
        assert handler.stats()["zoom_outs"] == 1

    @pytest.mark.asyncio
    async def test_non_matching_windows_send_nothing(self, handler, connector):
        records = [record("focus", 1, app_id="foot", pid=100), record("blur", 1, app_id="foot", pid=100)]
        stream = EventStream(FakeTransport(records))
        await stream.connect()
        router = WindowEventRouter()
        handler.install(router)

        await asyncio.gather(stream.run(), router.run(stream.subscribe()))

        assert connector.attempts == []
