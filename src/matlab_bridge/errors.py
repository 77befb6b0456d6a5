class BridgeError(Exception):
    """Base class for relay failures surfaced to HTTP callers."""


class UpstreamUnavailableError(BridgeError):
    """No upstream channel is open."""


class UpstreamWriteError(BridgeError):
    """Writing a request to the upstream channel failed."""


class UpstreamDisconnectedError(BridgeError):
    """The upstream channel closed while the request was pending."""


class RequestTimeoutError(BridgeError):
    def __init__(self, request_id, timeout: float):
        super().__init__(f"Request timeout: {request_id!r} after {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


class DuplicateRequestError(BridgeError):
    def __init__(self, request_id):
        super().__init__(f"Request id {request_id!r} is already in flight")
        self.request_id = request_id


class ShuttingDownError(BridgeError):
    """The bridge is shutting down."""
