import asyncio
import logging

from aiohttp import web

from .config import HTTP_HOST, HTTP_PORT, MQTT_HOST, MQTT_PORT, configure_logging
from .http_api import make_app
from .session import SessionManager

logger = logging.getLogger(__name__)


async def start_http(manager: SessionManager, host: str = HTTP_HOST, port: int = HTTP_PORT):
    app = make_app(manager)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP API listening on http://%s:%s (broker %s:%s)", host, port, MQTT_HOST, MQTT_PORT)
    return runner


async def run_all():
    configure_logging()
    manager = SessionManager()
    runner = await start_http(manager)
    try:
        await asyncio.Event().wait()
    finally:
        await manager.close_all()
        await runner.cleanup()
