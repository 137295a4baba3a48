"""
Shared fixtures.

``broker`` runs a FakeBroker on an ephemeral localhost port; ``make_config``
builds a BrokerConfig pointing at it with timings short enough for tests.
"""

import pytest
import pytest_asyncio

from devicelink.config import BrokerConfig
from devicelink.state import DeviceStateCache
from fake_broker import FakeBroker


@pytest_asyncio.fixture
async def broker():
    fake = await FakeBroker().start()
    yield fake
    await fake.stop()


@pytest.fixture
def cache():
    return DeviceStateCache()


@pytest.fixture
def make_config(broker):
    def _make(**overrides):
        values = dict(
            host="127.0.0.1",
            port=broker.port,
            client_id="devicelink-test",
            username=None,
            password=None,
            tls=False,
            keepalive=0,
            connect_timeout=1.0,
            connect_attempts=2,
            max_reconnect_attempts=0,
            reconnect_base_delay=0.01,
            reconnect_max_delay=0.05,
            publish_retry_interval=0.1,
            publish_max_retries=2,
            publish_queue_size=100,
            publish_queue_timeout=0.2,
            subscribe_timeout=1.0,
        )
        values.update(overrides)
        return BrokerConfig(**values)

    return _make
