import logging

from matlab_bridge.connection import ConnectionManager
from matlab_bridge.correlator import RequestCorrelator
from matlab_bridge.errors import ShuttingDownError, UpstreamDisconnectedError
from matlab_bridge.settings import Settings

logger = logging.getLogger(__name__)


class BridgeSession:
    """The bridge's single upstream connection and its request correlator.

    One instance is shared by every HTTP caller. ``start()`` and ``shutdown()``
    are called by the host (the FastAPI lifespan).
    """

    def __init__(self, settings: Settings, connection: ConnectionManager | None = None):
        self.settings = settings
        self.connection = connection or ConnectionManager(settings)
        self.correlator = RequestCorrelator(self.connection, timeout=settings.request_timeout)
        self.connection.on_data(self.correlator.feed)
        self.connection.on_disconnect(self._handle_disconnect)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.connection.connected

    async def start(self) -> bool:
        connected = await self.connection.connect()
        if not connected:
            logger.warning("Running in simulation mode, no MATLAB MCP server reachable")
        return connected

    async def dispatch(self, request: dict) -> dict:
        if self._closing:
            raise ShuttingDownError("MATLAB MCP Bridge is shutting down")
        return await self.correlator.dispatch(request)

    async def shutdown(self) -> None:
        logger.info("Shutting down MATLAB MCP Bridge...")
        self._closing = True
        failed = self.correlator.fail_all(ShuttingDownError, "MATLAB MCP Bridge is shutting down")
        if failed:
            logger.info("Rejected %d pending request(s) on shutdown", failed)
        await self.connection.close()

    def _handle_disconnect(self) -> None:
        failed = self.correlator.fail_all(UpstreamDisconnectedError, "MATLAB server connection closed")
        if failed:
            logger.warning("Failed %d pending request(s) after upstream disconnect", failed)
