"""Tests for process orchestration in meowrelay.main."""

import asyncio
import os
import signal
import sys
from types import SimpleNamespace

import pytest

from meowrelay import main as main_module
from meowrelay.core.events import StreamReplaced
from meowrelay.core.types import TransportError
from meowrelay.interfaces.console import OperatorConsole

from conftest import FakeCompletion, FakeTransport


@pytest.fixture
def harness(tmp_path, monkeypatch):
    """Run ``main()`` against in-memory collaborators and a fake stdin."""
    config = tmp_path / "config.yaml"
    config.write_text(
        "matrix:\n"
        "  homeserver: \"https://matrix.example.org\"\n"
        "history_sync:\n"
        f"  directory: \"{(tmp_path / 'history').as_posix()}\"\n",
        encoding="utf-8",
    )
    transport = FakeTransport()
    completion = FakeCompletion()
    stdin = SimpleNamespace(reader=None)

    monkeypatch.setattr(main_module, "setup_logging", lambda cfg, debug=False: None)
    monkeypatch.setattr(main_module, "_build_transport", lambda cfg, path, full: transport)
    monkeypatch.setattr(main_module, "_build_completion", lambda cfg: completion)
    monkeypatch.setattr(main_module, "OperatorConsole",
                        lambda dispatcher, supervisor: OperatorConsole(dispatcher, supervisor, reader=stdin.reader))

    async def run() -> int:
        stdin.reader = asyncio.StreamReader()
        return await asyncio.wait_for(main_module.main(["--config", str(config)]), timeout=10)

    return transport, completion, stdin, run


async def _connected(transport: FakeTransport) -> None:
    while transport.connect_count == 0:
        await asyncio.sleep(0)


# ===================================================================
# Termination paths
# ===================================================================

class TestMain:
    @pytest.mark.asyncio
    async def test_stdin_eof_disconnects_and_exits_zero(self, harness):
        transport, completion, stdin, run = harness

        async def operator():
            await _connected(transport)
            stdin.reader.feed_data(b"listgroups\n")
            stdin.reader.feed_eof()

        feeder = asyncio.create_task(operator())
        assert await run() == 0
        await feeder

        assert transport.connect_count == 1
        assert transport.disconnect_count == 1
        assert completion.closed

    @pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
    @pytest.mark.asyncio
    async def test_signal_disconnects_and_exits_zero(self, harness):
        transport, _, _, run = harness

        async def interrupt():
            await _connected(transport)
            os.kill(os.getpid(), signal.SIGTERM)

        sender = asyncio.create_task(interrupt())
        assert await run() == 0
        await sender
        assert transport.disconnect_count == 1

    @pytest.mark.asyncio
    async def test_session_takeover_exits_zero_without_disconnect(self, harness):
        transport, _, _, run = harness

        async def takeover():
            await _connected(transport)
            transport.queue.put_nowait(StreamReplaced())

        pusher = asyncio.create_task(takeover())
        assert await run() == 0
        await pusher
        assert transport.disconnect_count == 0

    @pytest.mark.asyncio
    async def test_failed_initial_connect_exits_one(self, harness):
        transport, completion, _, run = harness
        transport.fail["connect"] = TransportError("homeserver unreachable")

        assert await run() == 1
        assert transport.connect_count == 1
        assert completion.closed

    @pytest.mark.asyncio
    async def test_missing_homeserver_exits_one(self, tmp_path, monkeypatch):
        config = tmp_path / "config.yaml"
        config.write_text("matrix:\n  user_id: \"@bot:example.org\"\n", encoding="utf-8")
        monkeypatch.setattr(main_module, "setup_logging", lambda cfg, debug=False: None)
        assert await main_module.main(["--config", str(config)]) == 1

    def test_missing_config_file_exits_one(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main_module.load_config(tmp_path / "absent.yaml")
        assert exc.value.code == 1
