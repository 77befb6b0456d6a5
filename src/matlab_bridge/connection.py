import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable

import anyio
import paramiko

from matlab_bridge.channel import DataCallback, SSHChannel, StreamChannel, UpstreamChannel
from matlab_bridge.errors import UpstreamUnavailableError
from matlab_bridge.settings import Settings

logger = logging.getLogger(__name__)

SSH_KEEPALIVE_SECONDS = 30

# Failures that leave the bridge in simulation mode instead of aborting startup.
CONNECT_ERRORS = (OSError, asyncio.TimeoutError, paramiko.SSHException)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionManager:
    """Owns the single upstream channel to the MATLAB MCP worker.

    ``connect()`` tries a direct TCP connection to the worker port first, then
    an SSH tunnel to the MATLAB host. Over the tunnel it attaches to a worker
    that is already listening, or launches one and attaches to its stdio.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self.state = ConnectionState.DISCONNECTED
        self._channel: UpstreamChannel | None = None
        self._ssh_client: paramiko.SSHClient | None = None
        self._ssh_release: asyncio.Task | None = None
        self._data_callbacks: list[DataCallback] = []
        self._disconnect_callbacks: list[Callable[[], None]] = []

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def on_data(self, callback: DataCallback) -> None:
        self._data_callbacks.append(callback)

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    async def connect(self) -> bool:
        if self.state is not ConnectionState.DISCONNECTED:
            return self.connected

        self.state = ConnectionState.CONNECTING
        logger.info("Attempting to connect to MATLAB MCP server...")
        try:
            channel = await self._open_upstream()
        except BaseException:
            self.state = ConnectionState.DISCONNECTED
            raise
        if channel is None:
            self.state = ConnectionState.DISCONNECTED
            return False

        self.attach(channel)
        return True

    def attach(self, channel: UpstreamChannel) -> None:
        """Adopt ``channel`` as the upstream and start reading from it."""
        self._channel = channel
        channel.on_data(self._forward_data)
        channel.on_close(lambda: self._handle_channel_closed(channel))
        self.state = ConnectionState.CONNECTED
        channel.start()
        logger.info("Connected to MATLAB MCP server via %s channel", channel.name)

    async def send(self, data: bytes) -> None:
        channel = self._channel
        if not self.connected or channel is None:
            raise UpstreamUnavailableError("MATLAB server not connected")
        await channel.send(data)

    async def close(self) -> None:
        channel, self._channel = self._channel, None
        self.state = ConnectionState.DISCONNECTED
        if channel is not None:
            await channel.close()
        client, self._ssh_client = self._ssh_client, None
        if client is not None:
            await anyio.to_thread.run_sync(client.close)
        release, self._ssh_release = self._ssh_release, None
        if release is not None:
            await release

    def _forward_data(self, data: bytes) -> None:
        for callback in list(self._data_callbacks):
            callback(data)

    def _handle_channel_closed(self, channel: UpstreamChannel) -> None:
        if channel is not self._channel:
            return
        logger.warning("MATLAB server connection closed")
        self._channel = None
        self.state = ConnectionState.DISCONNECTED
        client, self._ssh_client = self._ssh_client, None
        if client is not None:
            self._ssh_release = asyncio.create_task(anyio.to_thread.run_sync(client.close))
        for callback in list(self._disconnect_callbacks):
            callback()

    async def _open_upstream(self) -> UpstreamChannel | None:
        try:
            return await self._open_direct()
        except CONNECT_ERRORS as direct_error:
            logger.info("Direct connection failed, trying SSH tunnel...")
            try:
                return await self._open_tunnel()
            except CONNECT_ERRORS as ssh_error:
                logger.warning("Both direct and SSH connections failed")
                logger.warning("Direct error: %r", direct_error)
                logger.warning("SSH error: %r", ssh_error)
                return None

    # --- direct path ---

    async def _open_direct(self) -> UpstreamChannel:
        host = self._settings.matlab_host
        port = self._settings.matlab_mcp_port
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=self._settings.direct_timeout,
        )
        logger.info("Direct connection to %s:%d established", host, port)
        return StreamChannel(reader, writer)

    # --- tunneled path ---

    async def _open_tunnel(self) -> UpstreamChannel:
        client = await anyio.to_thread.run_sync(self._ssh_connect)
        try:
            if await anyio.to_thread.run_sync(self._worker_listening, client):
                logger.info(
                    "MATLAB MCP server is already running on port %d",
                    self._settings.matlab_mcp_port,
                )
                channel = await anyio.to_thread.run_sync(self._forward_to_worker, client)
            else:
                logger.info("Starting MATLAB MCP server...")
                channel = await anyio.to_thread.run_sync(self._launch_worker, client)
        except BaseException:
            client.close()
            raise
        self._ssh_client = client
        return channel

    def _key_filename(self) -> str | None:
        key_path = self._settings.matlab_ssh_key_path
        if not key_path:
            logger.info("No SSH key path specified, will use password authentication")
            return None
        path = Path(key_path).expanduser()
        if not path.is_file():
            logger.warning("SSH key %s not found, falling back to password authentication", path)
            return None
        try:
            with path.open("rb") as key_file:
                key_file.read(1)
        except OSError as exc:
            logger.warning("Failed to read SSH key %s (%s), falling back to password authentication", path, exc)
            return None
        logger.info("Using SSH private key from %s", path)
        return str(path)

    def _ssh_connect(self) -> paramiko.SSHClient:
        s = self._settings
        logger.info("Attempting SSH connection to %s:%d as %s", s.matlab_host, s.matlab_ssh_port, s.matlab_ssh_user)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=s.matlab_host,
                port=s.matlab_ssh_port,
                username=s.matlab_ssh_user,
                key_filename=self._key_filename(),
                password=s.matlab_ssh_password,
                timeout=s.ssh_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except BaseException:
            client.close()
            raise
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(SSH_KEEPALIVE_SECONDS)
        logger.info("SSH connection established")
        return client

    def _worker_listening(self, client: paramiko.SSHClient) -> bool:
        port = self._settings.matlab_mcp_port
        command = self._settings.matlab_probe_command.format(port=port)
        try:
            _, stdout, _ = client.exec_command(command, timeout=self._settings.ssh_timeout)
            output = stdout.read().decode("utf-8", errors="replace")
        except (OSError, paramiko.SSHException) as exc:
            logger.info("Worker probe failed: %s", exc)
            return False
        return f":{port}" in output

    def _forward_to_worker(self, client: paramiko.SSHClient) -> SSHChannel:
        port = self._settings.matlab_mcp_port
        transport = self._transport(client)
        channel = transport.open_channel(
            "direct-tcpip",
            ("127.0.0.1", port),
            ("127.0.0.1", 0),
            timeout=self._settings.ssh_timeout,
        )
        return SSHChannel(channel, name="forward")

    def _launch_worker(self, client: paramiko.SSHClient) -> SSHChannel:
        transport = self._transport(client)
        channel = transport.open_session(timeout=self._settings.ssh_timeout)
        channel.update_environment({"MATLAB_PATH": self._settings.matlab_path})
        channel.exec_command(self._settings.matlab_server_command)
        return SSHChannel(channel, name="worker", capture_stderr=True)

    @staticmethod
    def _transport(client: paramiko.SSHClient) -> paramiko.Transport:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH transport is not active")
        return transport
