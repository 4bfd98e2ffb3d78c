"""Tests for the kitty remote-control client."""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path

import pytest

from zooming_kittens import control
from zooming_kittens.control import (
    DCS_PREFIX,
    DCS_SUFFIX,
    ControlCommand,
    KittyControlClient,
    decode_response,
    find_kitty_instances,
    kitty_socket_path,
    socket_path_candidates,
)
from zooming_kittens.errors import ControlConnectionError, ProtocolError


def frame(payload: dict) -> bytes:
    return DCS_PREFIX + json.dumps(payload).encode() + DCS_SUFFIX


@pytest.fixture
def short_tmp():
    # unix socket paths are limited to ~108 bytes
    path = Path(tempfile.mkdtemp(prefix="zk-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


class FakeKitty:
    """Minimal kitty control socket server."""

    def __init__(self, reply=None, close_after_read=False):
        self.reply = reply or (lambda request: {"ok": True})
        self.close_after_read = close_after_read
        self.requests = []
        self.server = None

    async def _handle(self, reader, writer):
        try:
            while True:
                raw = await reader.readuntil(DCS_SUFFIX)
                request = json.loads(raw[len(DCS_PREFIX):-len(DCS_SUFFIX)])
                self.requests.append(request)
                if self.close_after_read:
                    break
                if not request.get("no_response"):
                    writer.write(frame(self.reply(request)))
                    await writer.drain()
        except asyncio.IncompleteReadError:
            pass
        finally:
            writer.close()

    async def start(self, path: Path):
        self.server = await asyncio.start_unix_server(self._handle, path=str(path))
        return self

    async def stop(self):
        self.server.close()
        await self.server.wait_closed()


class TestCommands:
    def test_increase_frame(self):
        raw = ControlCommand.increase(6).encode()

        assert raw.startswith(b"\x1bP@kitty-cmd")
        assert raw.endswith(b"\x1b\\")
        message = json.loads(raw[len(DCS_PREFIX):-len(DCS_SUFFIX)])
        assert message["cmd"] == "set-font-size"
        assert message["payload"] == {"size": 6, "increment_op": "+"}
        assert message["no_response"] is False
        assert message["version"] == [0, 26, 0]

    @pytest.mark.parametrize(
        "command,op,size",
        [
            (ControlCommand.decrease(2), "-", 2),
            (ControlCommand.scale(1.5), "*", 1.5),
            (ControlCommand.unscale(1.5), "/", 1.5),
            (ControlCommand.reset(), "", 0),
        ],
    )
    def test_builders(self, command, op, size):
        assert command.payload == {"size": size, "increment_op": op}

    def test_invalid_op(self):
        with pytest.raises(ValueError):
            ControlCommand.set_font_size(12, "%")

    def test_ls_has_no_payload(self):
        message = json.loads(ControlCommand.ls().encode()[len(DCS_PREFIX):-len(DCS_SUFFIX)])

        assert message["cmd"] == "ls"
        assert "payload" not in message

    def test_describe(self):
        assert ControlCommand.increase(6).describe() == "set-font-size +6"
        assert ControlCommand.ls().describe() == "ls"


class TestDecodeResponse:
    def test_ok(self):
        response = decode_response(frame({"ok": True, "data": "x"}))

        assert response.ok
        assert response.data == "x"

    def test_error_reply(self):
        response = decode_response(frame({"ok": False, "error": "Remote control is disabled"}))

        assert not response.ok
        assert response.error == "Remote control is disabled"

    @pytest.mark.parametrize("raw", [b"garbage", DCS_PREFIX + b"{oops" + DCS_SUFFIX, frame({"data": 1})])
    def test_malformed_is_fatal(self, raw):
        with pytest.raises(ProtocolError) as exc_info:
            decode_response(raw)

        assert exc_info.value.fatal


class TestClient:
    @pytest.mark.asyncio
    async def test_request_round_trip(self, short_tmp):
        kitty = await FakeKitty().start(short_tmp / "kitty.sock")
        client = await KittyControlClient(short_tmp / "kitty.sock", timeout=1.0, pid=42).connect()

        try:
            response = await client.request(ControlCommand.increase(6))
            await client.request(ControlCommand.decrease(6))
        finally:
            await client.close()
            await kitty.stop()

        assert response.ok
        assert [r["payload"]["increment_op"] for r in kitty.requests] == ["+", "-"]
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_rejected_command_raises_protocol_error(self, short_tmp):
        kitty = await FakeKitty(reply=lambda r: {"ok": False, "error": "nope"}).start(short_tmp / "kitty.sock")
        client = await KittyControlClient(short_tmp / "kitty.sock", timeout=1.0).connect()

        try:
            with pytest.raises(ProtocolError) as exc_info:
                await client.request(ControlCommand.increase(1))
        finally:
            await client.close()
            await kitty.stop()

        assert not exc_info.value.fatal
        assert "nope" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_peer_close_raises_connection_error(self, short_tmp):
        kitty = await FakeKitty(close_after_read=True).start(short_tmp / "kitty.sock")
        client = await KittyControlClient(short_tmp / "kitty.sock", timeout=1.0).connect()

        try:
            with pytest.raises(ControlConnectionError):
                await client.request(ControlCommand.increase(1))
        finally:
            await client.close()
            await kitty.stop()

    @pytest.mark.asyncio
    async def test_connect_to_missing_socket(self, short_tmp):
        with pytest.raises(ControlConnectionError):
            await KittyControlClient(short_tmp / "missing.sock", timeout=1.0).connect()

    @pytest.mark.asyncio
    async def test_request_when_not_connected(self, short_tmp):
        client = KittyControlClient(short_tmp / "kitty.sock")

        with pytest.raises(ControlConnectionError):
            await client.request(ControlCommand.ls())


class TestSocketDiscovery:
    def test_candidates_with_runtime_dir(self, monkeypatch):
        monkeypatch.setenv("XDG_RUNTIME_DIR", "/run/user/1000")

        assert socket_path_candidates(42) == [
            Path("/run/user/1000/kitty-42.sock"),
            Path("/run/user/1000/kitty/kitty-42.sock"),
        ]

    def test_first_existing_candidate(self, monkeypatch, short_tmp):
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(short_tmp))
        (short_tmp / "kitty").mkdir()
        (short_tmp / "kitty" / "kitty-42.sock").touch()

        assert kitty_socket_path(42) == short_tmp / "kitty" / "kitty-42.sock"
        assert kitty_socket_path(43) is None

    def test_find_instances_only_lists_live_pids(self, monkeypatch, short_tmp):
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(short_tmp))
        own_pid = os.getpid()
        (short_tmp / f"kitty-{own_pid}.sock").touch()
        (short_tmp / "kitty-999999999.sock").touch()
        (short_tmp / "kitty-abc.sock").touch()

        assert find_kitty_instances() == [(own_pid, short_tmp / f"kitty-{own_pid}.sock")]

    def test_find_instances_asks_psutil_about_liveness(self, monkeypatch, short_tmp):
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(short_tmp))
        (short_tmp / "kitty").mkdir()
        (short_tmp / "kitty-10.sock").touch()
        (short_tmp / "kitty" / "kitty-20.sock").touch()
        (short_tmp / "kitty" / "kitty-10.sock").touch()
        checked = []
        monkeypatch.setattr(control.psutil, "pid_exists", lambda pid: checked.append(pid) or pid in (10, 20))

        assert find_kitty_instances() == [(10, short_tmp / "kitty-10.sock"), (20, short_tmp / "kitty" / "kitty-20.sock")]
        assert set(checked) == {10, 20}

    def test_candidates_without_runtime_dir(self, monkeypatch):
        monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
        monkeypatch.setattr(os, "getuid", lambda: 1000)

        assert socket_path_candidates(42) == [Path("/run/user/1000/kitty-42.sock"), Path("/tmp/kitty-42.sock")]
