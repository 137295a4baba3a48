from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"


@dataclass(frozen=True)
class Message:
    topic: str
    payload: bytes
    qos: int = 0
    retained: bool = False
    dup: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "payload": self.payload_text(),
            "qos": self.qos,
            "retained": self.retained,
            "dup": self.dup,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DeviceState:
    device_id: str
    topic: str
    payload: bytes
    qos: int
    retained: bool
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "topic": self.topic,
            "payload": self.payload.decode("utf-8", errors="replace"),
            "qos": self.qos,
            "retained": self.retained,
            "lastUpdate": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class PublishAck:
    topic: str
    qos: int
    message_id: Optional[int] = None
    attempts: int = 1

    def to_dict(self) -> dict:
        return {"accepted": True, "messageId": self.message_id, "attempts": self.attempts}
