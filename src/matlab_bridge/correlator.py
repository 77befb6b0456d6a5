import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from matlab_bridge.errors import BridgeError, DuplicateRequestError, RequestTimeoutError
from matlab_bridge.simulation import simulate_response

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_LINE_BYTES = 4 * 1024 * 1024


class Upstream(Protocol):
    @property
    def connected(self) -> bool: ...

    async def send(self, data: bytes) -> None: ...


def _key(request_id) -> tuple:
    # 1, 1.0 and True are equal dict keys but distinct JSON-RPC ids.
    return type(request_id), request_id


@dataclass
class PendingRequest:
    request_id: Any
    future: asyncio.Future
    timer: asyncio.TimerHandle


class RequestCorrelator:
    """Matches JSON-RPC requests written upstream to the responses read back.

    Every registered request leaves the pending table exactly once: on a
    matching response, on its deadline, or through ``fail_all``. All three
    paths pop the entry before touching the future, so a late or repeated
    response line for a removed id is dropped.
    """

    def __init__(self, upstream: Upstream, timeout: float = DEFAULT_TIMEOUT):
        self._upstream = upstream
        self.timeout = timeout
        self._pending: dict[Any, PendingRequest] = {}
        self._buffer = b""

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id) -> bool:
        return _key(request_id) in self._pending

    async def dispatch(self, request: dict) -> dict:
        if not self._upstream.connected:
            return simulate_response(request)

        request_id = request.get("id")
        if request_id is None:
            request_id = str(uuid.uuid4())
        key = _key(request_id)
        if key in self._pending:
            raise DuplicateRequestError(request_id)

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, request_id)
        self._pending[key] = PendingRequest(request_id, future, timer)

        line = json.dumps({**request, "id": request_id}) + "\n"
        try:
            try:
                await self._upstream.send(line.encode("utf-8"))
            except BridgeError as exc:
                self._reject(request_id, future, exc)
            return await future
        finally:
            # No-op once resolved; otherwise the caller went away first.
            self._reject(request_id, future, None)

    def feed(self, data: bytes) -> None:
        """Consume a chunk of upstream output, resolving any complete lines."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        if len(self._buffer) > MAX_LINE_BYTES:
            logger.warning("Discarding %d bytes of unterminated upstream output", len(self._buffer))
            self._buffer = b""

        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                logger.debug("MATLAB log: %s", line.decode("utf-8", errors="replace"))
                continue
            self._handle_message(message)

    def fail_all(self, error: type[BridgeError], message: str) -> int:
        """Reject every pending request with a fresh ``error(message)``."""
        entries = list(self._pending.values())
        self._pending.clear()
        # A partial line from a closed channel can never complete.
        self._buffer = b""
        for entry in entries:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error(message))
        return len(entries)

    def _handle_message(self, message) -> None:
        if not isinstance(message, dict):
            logger.debug("Ignoring non-object upstream message: %r", message)
            return
        request_id = message.get("id")
        if request_id is None:
            logger.debug("Upstream notification: %s", message.get("method"))
            return
        try:
            entry = self._pending.pop(_key(request_id))
        except (KeyError, TypeError):
            logger.debug("Discarding upstream response for unknown id %r", request_id)
            return
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(message)

    def _expire(self, request_id) -> None:
        entry = self._pending.pop(_key(request_id), None)
        if entry is None:
            return
        logger.warning("Request %r timed out after %gs", request_id, self.timeout)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeoutError(request_id, self.timeout))

    def _reject(self, request_id, future: asyncio.Future, exc: BaseException | None) -> None:
        key = _key(request_id)
        entry = self._pending.get(key)
        if entry is None or entry.future is not future:
            return
        del self._pending[key]
        entry.timer.cancel()
        if exc is not None and not future.done():
            future.set_exception(exc)
