"""Exception hierarchy surfaced to callers of the session API.

Every error carries a stable ``kind`` and a human-readable ``detail`` so the
HTTP layer can render it without inspecting the exception type.
"""

from enum import Enum


class ConnectErrorKind(str, Enum):
    AUTH_REJECTED = "AuthRejected"
    NETWORK_UNAVAILABLE = "NetworkUnavailable"
    TIMEOUT = "Timeout"
    REFUSED = "Refused"


class SubscribeErrorKind(str, Enum):
    INVALID_FILTER = "InvalidFilter"
    NOT_CONNECTED = "NotConnected"
    REJECTED = "Rejected"
    TIMEOUT = "Timeout"


class PublishErrorKind(str, Enum):
    QUEUE_FULL = "QueueFull"
    DELIVERY_TIMEOUT = "DeliveryTimeout"
    SESSION_CLOSED = "SessionClosed"
    NOT_CONNECTED = "NotConnected"
    INVALID_TOPIC = "InvalidTopic"
    INVALID_QOS = "InvalidQos"


class DeviceLinkError(Exception):
    """Base class: ``kind`` is one of the ``*ErrorKind`` enums."""

    def __init__(self, kind: Enum, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    def to_dict(self) -> dict:
        return {"accepted": False, "error": self.kind.value, "detail": self.detail}


class ConnectError(DeviceLinkError):
    """Opening or keeping the broker connection failed.

    Only ``NETWORK_UNAVAILABLE`` and ``TIMEOUT`` are retried; ``AUTH_REJECTED``
    and ``REFUSED`` come from the broker's CONNACK and are final.

    Attributes:
        return_code: CONNACK return code when the broker answered, else None
    """

    TRANSIENT = frozenset({ConnectErrorKind.NETWORK_UNAVAILABLE, ConnectErrorKind.TIMEOUT})

    def __init__(self, kind: ConnectErrorKind, detail: str = "", return_code=None):
        self.return_code = return_code
        super().__init__(kind, detail)

    @property
    def transient(self) -> bool:
        return self.kind in self.TRANSIENT


class SubscribeError(DeviceLinkError):
    pass


class PublishError(DeviceLinkError):
    """Publishing failed.

    Attributes:
        message_id: packet identifier of the failed message, when one was assigned
        attempts: number of times the message was written to the wire
    """

    def __init__(self, kind: PublishErrorKind, detail: str = "", message_id=None, attempts: int = 0):
        self.message_id = message_id
        self.attempts = attempts
        super().__init__(kind, detail)


class ConnectionLost(Exception):
    """Internal signal: the live connection went away (EOF, socket error, keepalive)."""
