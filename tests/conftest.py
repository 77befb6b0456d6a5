from __future__ import annotations

import asyncio
import json

from matlab_bridge.channel import UpstreamChannel
from matlab_bridge.connection import ConnectionManager
from matlab_bridge.errors import UpstreamWriteError
from matlab_bridge.settings import Settings


class MemoryChannel(UpstreamChannel):
    """In-process channel; tests push upstream output into ``inbox``."""

    def __init__(self, name: str = "memory") -> None:
        super().__init__(name)
        self.inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self.written: list[dict] = []

    def push(self, message: dict) -> None:
        self.inbox.put_nowait(json.dumps(message).encode() + b"\n")

    def hang_up(self) -> None:
        self.inbox.put_nowait(b"")

    async def _read(self) -> bytes:
        return await self.inbox.get()

    async def _write(self, data: bytes) -> None:
        self.written.append(json.loads(data))

    async def _close_transport(self) -> None:
        self.hang_up()


class EchoChannel(MemoryChannel):
    """Answers every request with its method name, preceded by log noise."""

    async def _write(self, data: bytes) -> None:
        await super()._write(data)
        request = self.written[-1]
        self.inbox.put_nowait(b"MATLAB engine warming up\n")
        self.push({"jsonrpc": "2.0", "id": request["id"], "result": {"echo": request["method"]}})


class BrokenChannel(MemoryChannel):
    async def _write(self, data: bytes) -> None:
        raise UpstreamWriteError("broken pipe")


class StubConnection(ConnectionManager):
    """ConnectionManager whose upstream is handed in instead of dialled."""

    def __init__(self, settings: Settings, channel: UpstreamChannel | None = None) -> None:
        super().__init__(settings)
        self.channel = channel

    async def _open_upstream(self) -> UpstreamChannel | None:
        return self.channel


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class FakeParamikoChannel:
    """Records what the bridge asks of a paramiko channel."""

    def __init__(self) -> None:
        self.environment: dict[str, str] = {}
        self.commands: list[str] = []
        self.closed = False

    def update_environment(self, environment: dict[str, str]) -> None:
        self.environment.update(environment)

    def exec_command(self, command: str) -> None:
        self.commands.append(command)

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self) -> None:
        self.opened: list[tuple] = []
        self.sessions: list[FakeParamikoChannel] = []

    def is_active(self) -> bool:
        return True

    def open_channel(self, kind, dest_addr, src_addr, timeout=None) -> FakeParamikoChannel:
        self.opened.append((kind, dest_addr, src_addr))
        return FakeParamikoChannel()

    def open_session(self, timeout=None) -> FakeParamikoChannel:
        channel = FakeParamikoChannel()
        self.sessions.append(channel)
        return channel


class FakeOutput:
    def __init__(self, text: str) -> None:
        self._text = text

    def read(self) -> bytes:
        return self._text.encode()


class FakeSSHClient:
    """Stands in for a connected ``paramiko.SSHClient``."""

    def __init__(self, probe_output: str = "", probe_error: Exception | None = None) -> None:
        self.transport = FakeTransport()
        self.probe_output = probe_output
        self.probe_error = probe_error
        self.executed: list[str] = []
        self.closed = False

    def exec_command(self, command: str, timeout=None):
        self.executed.append(command)
        if self.probe_error is not None:
            raise self.probe_error
        return None, FakeOutput(self.probe_output), None

    def get_transport(self) -> FakeTransport:
        return self.transport

    def close(self) -> None:
        self.closed = True
