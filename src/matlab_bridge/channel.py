import asyncio
import logging
from typing import Callable

import anyio
import paramiko

from matlab_bridge.errors import UpstreamWriteError

logger = logging.getLogger(__name__)

READ_SIZE = 65536

DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[], None]


class UpstreamChannel:
    """Duplex byte stream to the MATLAB MCP worker.

    Subclasses provide ``_read``, ``_write`` and ``_close_transport``. Reads run
    in a pump task on the event loop, so data and close callbacks always fire
    on the loop. An explicit ``close()`` does not fire close callbacks; only a
    transport EOF or error does.
    """

    def __init__(self, name: str):
        self.name = name
        self._data_callbacks: list[DataCallback] = []
        self._close_callbacks: list[CloseCallback] = []
        self._closed = False
        self._pump: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return not self._closed

    def on_data(self, callback: DataCallback) -> None:
        self._data_callbacks.append(callback)

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def start(self) -> None:
        self._pump = asyncio.create_task(self._run_pump())

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise UpstreamWriteError(f"{self.name} channel is closed")
        await self._write(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._close_transport()
        pump, self._pump = self._pump, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _run_pump(self) -> None:
        try:
            while True:
                data = await self._read()
                if not data:
                    break
                self._emit(data)
        except (OSError, paramiko.SSHException) as exc:
            if not self._closed:
                logger.warning("%s channel read failed: %s", self.name, exc)
        finally:
            self._mark_closed()

    def _emit(self, data: bytes) -> None:
        for callback in list(self._data_callbacks):
            try:
                callback(data)
            except Exception:
                logger.exception("%s channel data handler failed", self.name)

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("%s channel closed", self.name)
        for callback in list(self._close_callbacks):
            callback()

    async def _read(self) -> bytes:
        raise NotImplementedError

    async def _write(self, data: bytes) -> None:
        raise NotImplementedError

    async def _close_transport(self) -> None:
        raise NotImplementedError


class StreamChannel(UpstreamChannel):
    """Plain TCP connection to a worker reachable without a tunnel."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        name: str = "direct",
    ):
        super().__init__(name)
        self._reader = reader
        self._writer = writer

    async def _read(self) -> bytes:
        return await self._reader.read(READ_SIZE)

    async def _write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise UpstreamWriteError(f"write to {self.name} channel failed: {exc}") from exc

    async def _close_transport(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as exc:
            logger.debug("%s channel close: %s", self.name, exc)


class SSHChannel(UpstreamChannel):
    """A paramiko channel: either a port forward or an exec'd worker's stdio.

    paramiko is blocking, so every channel call is pushed to a worker thread.
    """

    def __init__(
        self,
        channel: paramiko.Channel,
        name: str = "ssh",
        capture_stderr: bool = False,
    ):
        super().__init__(name)
        self._channel = channel
        self._capture_stderr = capture_stderr
        self._stderr_pump: asyncio.Task | None = None

    def start(self) -> None:
        super().start()
        if self._capture_stderr:
            self._stderr_pump = asyncio.create_task(self._run_stderr_pump())

    async def close(self) -> None:
        await super().close()
        pump, self._stderr_pump = self._stderr_pump, None
        if pump is not None:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _read(self) -> bytes:
        data = await anyio.to_thread.run_sync(self._channel.recv, READ_SIZE)
        if not data and self._channel.exit_status_ready():
            logger.info(
                "MATLAB process exited with code %s",
                self._channel.recv_exit_status(),
            )
        return data

    async def _write(self, data: bytes) -> None:
        try:
            await anyio.to_thread.run_sync(self._channel.sendall, data)
        except (OSError, paramiko.SSHException) as exc:
            raise UpstreamWriteError(f"write to {self.name} channel failed: {exc}") from exc

    async def _close_transport(self) -> None:
        await anyio.to_thread.run_sync(self._channel.close)

    async def _run_stderr_pump(self) -> None:
        try:
            while True:
                data = await anyio.to_thread.run_sync(
                    self._channel.recv_stderr, READ_SIZE
                )
                if not data:
                    return
                for line in data.decode("utf-8", errors="replace").splitlines():
                    if line.strip():
                        logger.warning("MATLAB stderr: %s", line)
        except (OSError, paramiko.SSHException) as exc:
            logger.debug("%s stderr read stopped: %s", self.name, exc)
