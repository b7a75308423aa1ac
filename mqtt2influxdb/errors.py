"""
mqtt2influxdb — Error taxonomy

Only ConfigurationError and ConnectionRejected are allowed to end the
process.  Everything else is contained at the message or batch level and
shows up as a counter plus a log line.
"""


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigurationError(BridgeError):
    """The mapping file or process settings are invalid.  Fatal at startup."""


class PointConstructionError(BridgeError):
    """A matched message could not be turned into a point.  Message dropped."""


class DeliveryError(BridgeError):
    """A batch could not be written to the sink."""


class RetryableDeliveryError(DeliveryError):
    """Transient sink or network failure.  Worth another attempt."""


class FatalDeliveryError(DeliveryError):
    """The sink rejected the request (auth, malformed batch).  Retrying cannot help."""

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


class ConnectionLost(BridgeError):
    """A supervised connection failed or dropped.  Reconnect with backoff."""


class ConnectionRejected(BridgeError):
    """The peer refused us for a reason retries cannot fix (bad credentials)."""
