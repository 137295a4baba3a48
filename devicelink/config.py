import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Broker target. The port is always taken from MQTT_PORT; 1883 is plain MQTT over TCP.
MQTT_HOST = os.getenv("MQTT_HOST", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
MQTT_USERNAME = os.getenv("MQTT_USERNAME") or None
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD") or None
MQTT_TLS = os.getenv("MQTT_TLS", "0") == "1"
MQTT_CLIENT_ID_PREFIX = os.getenv("MQTT_CLIENT_ID_PREFIX", "devicelink")
MQTT_KEEPALIVE = int(os.getenv("MQTT_KEEPALIVE", "60"))
MQTT_CONNECT_TIMEOUT = float(os.getenv("MQTT_CONNECT_TIMEOUT", "10"))
MQTT_CONNECT_ATTEMPTS = int(os.getenv("MQTT_CONNECT_ATTEMPTS", "3"))
# 0 = keep trying forever
MQTT_MAX_RECONNECT_ATTEMPTS = int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "0"))

RECONNECT_BASE_DELAY = float(os.getenv("RECONNECT_BASE_DELAY", "1.0"))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", "30.0"))

PUBLISH_RETRY_INTERVAL = float(os.getenv("PUBLISH_RETRY_INTERVAL", "5.0"))
PUBLISH_MAX_RETRIES = int(os.getenv("PUBLISH_MAX_RETRIES", "3"))
PUBLISH_QUEUE_SIZE = int(os.getenv("PUBLISH_QUEUE_SIZE", "100"))
PUBLISH_QUEUE_TIMEOUT = float(os.getenv("PUBLISH_QUEUE_TIMEOUT", "1.0"))
SUBSCRIBE_TIMEOUT = float(os.getenv("SUBSCRIBE_TIMEOUT", "10.0"))

DEVICE_CONTROL_TOPIC = os.getenv("DEVICE_CONTROL_TOPIC", "esp8266/led/control")

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_PACKET_TIMES = os.getenv("LOG_PACKET_TIMES", "0") == "1"


@dataclass
class BrokerConfig:
    """Everything one session needs to reach its broker."""

    host: str = MQTT_HOST
    port: int = MQTT_PORT
    client_id: str = MQTT_CLIENT_ID_PREFIX
    username: Optional[str] = MQTT_USERNAME
    password: Optional[str] = field(default=MQTT_PASSWORD, repr=False)
    tls: bool = MQTT_TLS
    keepalive: int = MQTT_KEEPALIVE
    connect_timeout: float = MQTT_CONNECT_TIMEOUT
    connect_attempts: int = MQTT_CONNECT_ATTEMPTS
    max_reconnect_attempts: int = MQTT_MAX_RECONNECT_ATTEMPTS
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    publish_retry_interval: float = PUBLISH_RETRY_INTERVAL
    publish_max_retries: int = PUBLISH_MAX_RETRIES
    publish_queue_size: int = PUBLISH_QUEUE_SIZE
    publish_queue_timeout: float = PUBLISH_QUEUE_TIMEOUT
    subscribe_timeout: float = SUBSCRIBE_TIMEOUT

    @classmethod
    def for_session(cls, session_id: str, **overrides) -> "BrokerConfig":
        return cls(client_id=f"{MQTT_CLIENT_ID_PREFIX}-{session_id}", **overrides)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
