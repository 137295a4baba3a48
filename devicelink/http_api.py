import asyncio
import json
import logging

from aiohttp import web

from .config import DEVICE_CONTROL_TOPIC
from .errors import (
    ConnectErrorKind, DeviceLinkError, PublishErrorKind, SubscribeErrorKind,
)
from .metrics import METRICS
from .session import SessionManager
from .state import DEVICE_STATE, DeviceStateCache

logger = logging.getLogger(__name__)

SESSIONS = web.AppKey("sessions", SessionManager)
DEVICES = web.AppKey("devices", DeviceStateCache)
EVENTS_INTERVAL = web.AppKey("events_interval", float)

ERROR_STATUS = {
    ConnectErrorKind.AUTH_REJECTED: 502,
    ConnectErrorKind.REFUSED: 502,
    ConnectErrorKind.NETWORK_UNAVAILABLE: 503,
    ConnectErrorKind.TIMEOUT: 503,
    SubscribeErrorKind.INVALID_FILTER: 400,
    SubscribeErrorKind.NOT_CONNECTED: 409,
    SubscribeErrorKind.REJECTED: 502,
    SubscribeErrorKind.TIMEOUT: 504,
    PublishErrorKind.INVALID_TOPIC: 400,
    PublishErrorKind.INVALID_QOS: 400,
    PublishErrorKind.NOT_CONNECTED: 409,
    PublishErrorKind.SESSION_CLOSED: 409,
    PublishErrorKind.QUEUE_FULL: 503,
    PublishErrorKind.DELIVERY_TIMEOUT: 504,
}


def _error(err: DeviceLinkError):
    status = ERROR_STATUS.get(err.kind, 500)
    logger.warning("Request failed (%d): %s", status, err)
    return web.json_response(err.to_dict(), status=status)


def _bad_request(detail: str):
    return web.json_response({"accepted": False, "error": "BadRequest", "detail": detail}, status=400)


async def _json_body(request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _qos(body):
    qos = body.get("qos", 0)
    if isinstance(qos, bool) or qos not in (0, 1):
        return None
    return qos


def _retained(body, default: bool):
    retained = body.get("retained", default)
    return retained if isinstance(retained, bool) else None


def _payload(value) -> str:
    # the dashboard sends either a string or a bare boolean for the LED
    if value is None:
        return ""
    if isinstance(value, bool):
        return "ON" if value else "OFF"
    if isinstance(value, str):
        return value
    return json.dumps(value)


# ---------------- session operations ----------------

async def publish(request):
    body = await _json_body(request)
    if body is None:
        return _bad_request("Body must be a JSON object")
    topic = body.get("topic")
    if not isinstance(topic, str) or not topic:
        return _bad_request("Topic is required")
    qos = _qos(body)
    if qos is None:
        return _bad_request("qos must be 0 or 1")
    retained = _retained(body, False)
    if retained is None:
        return _bad_request("retained must be true or false")
    payload = _payload(body.get("payload", body.get("message")))

    try:
        session = await request.app[SESSIONS].get_or_create(request.match_info["session_id"])
        ack = await session.publish(topic, payload, qos, retained)
    except DeviceLinkError as e:
        return _error(e)
    return web.json_response(ack.to_dict())


async def led(request):
    body = await _json_body(request)
    if body is None or not isinstance(body.get("on"), bool):
        return _bad_request('Body must be {"on": true|false}')
    qos = _qos(body)
    if qos is None:
        return _bad_request("qos must be 0 or 1")
    retained = _retained(body, True)
    if retained is None:
        return _bad_request("retained must be true or false")

    try:
        session = await request.app[SESSIONS].get_or_create(request.match_info["session_id"])
        ack = await session.publish(DEVICE_CONTROL_TOPIC, _payload(body["on"]), qos, retained)
    except DeviceLinkError as e:
        return _error(e)
    return web.json_response({**ack.to_dict(), "topic": DEVICE_CONTROL_TOPIC})


async def subscribe(request):
    body = await _json_body(request)
    if body is None:
        return _bad_request("Body must be a JSON object")
    topic_filter = body.get("filter", body.get("topic"))
    if not isinstance(topic_filter, str):
        return _bad_request("filter is required")
    qos = _qos(body)
    if qos is None:
        return _bad_request("qos must be 0 or 1")

    try:
        session = await request.app[SESSIONS].get_or_create(request.match_info["session_id"])
        await session.subscribe(topic_filter, qos=qos)
    except DeviceLinkError as e:
        return _error(e)
    return web.json_response({"accepted": True, "filter": topic_filter})


async def unsubscribe(request):
    body = await _json_body(request)
    if body is None or not isinstance(body.get("filter"), str):
        return _bad_request("filter is required")

    session = request.app[SESSIONS].get(request.match_info["session_id"])
    if session is None:
        return web.json_response({"accepted": False, "filter": body["filter"]})
    try:
        removed = await session.unsubscribe(body["filter"])
    except DeviceLinkError as e:
        return _error(e)
    return web.json_response({"accepted": removed, "filter": body["filter"]})


def _status_of(app, session_id: str) -> dict:
    session = app[SESSIONS].get(session_id)
    if session is None:
        return {
            "id": session_id,
            "connected": False,
            "state": "Disconnected",
            "subscriptions": [],
            "lastUpdate": None,
        }
    return session.status()


async def status(request):
    return web.json_response(_status_of(request.app, request.match_info["session_id"]))


async def messages(request):
    session = request.app[SESSIONS].get(request.match_info["session_id"])
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return _bad_request("limit must be an integer")
    if limit < 1:
        return _bad_request("limit must be at least 1")
    if session is None:
        return web.json_response([])
    return web.json_response([m.to_dict() for m in session.inbox.recent(limit)])


async def disconnect(request):
    session_id = request.match_info["session_id"]
    closed = await request.app[SESSIONS].disconnect(session_id)
    return web.json_response({"accepted": True, "disconnected": closed})


# ---------------- devices ----------------

async def device_state(request):
    topic = request.match_info["topic"]
    entry = request.app[DEVICES].get(topic)
    if entry is None:
        return web.json_response(
            {"error": "NotFound", "detail": f"No state cached for {topic}"}, status=404,
        )
    return web.json_response(entry.to_dict())


# ---------------- stats ----------------

async def stats(request):
    return web.json_response(METRICS.snapshot())


async def metrics_prom(request):
    return web.Response(text=METRICS.prometheus(), content_type="text/plain")


# ---------------- Live status (SSE) ----------------
async def events(request):
    """
    Server-Sent Events endpoint.
    Browser connects to /sessions/{id}/events and receives the session status every second.
    """
    resp = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Access-Control-Allow-Origin": "*",
        },
    )
    await resp.prepare(request)

    session_id = request.match_info["session_id"]
    interval = request.app[EVENTS_INTERVAL]
    try:
        while True:
            data = json.dumps(_status_of(request.app, session_id))
            await resp.write(f"data: {data}\n\n".encode("utf-8"))
            await asyncio.sleep(interval)
    except (ConnectionResetError, BrokenPipeError):
        logger.debug("Status stream for %s closed by client", session_id)

    return resp


def make_app(manager: SessionManager = None, cache: DeviceStateCache = DEVICE_STATE,
             events_interval: float = 1.0):
    app = web.Application()
    app[SESSIONS] = manager or SessionManager(cache=cache)
    app[DEVICES] = cache
    app[EVENTS_INTERVAL] = events_interval

    app.router.add_post("/sessions/{session_id}/publish", publish)
    app.router.add_post("/sessions/{session_id}/led", led)
    app.router.add_post("/sessions/{session_id}/subscribe", subscribe)
    app.router.add_post("/sessions/{session_id}/unsubscribe", unsubscribe)
    app.router.add_get("/sessions/{session_id}/status", status)
    app.router.add_get("/sessions/{session_id}/messages", messages)
    app.router.add_get("/sessions/{session_id}/events", events)
    app.router.add_delete("/sessions/{session_id}", disconnect)

    app.router.add_get("/devices/{topic:.+}", device_state)

    app.router.add_get("/stats", stats)
    app.router.add_get("/metrics", metrics_prom)

    async def close_sessions(app):
        await app[SESSIONS].close_all()

    app.on_shutdown.append(close_sessions)
    return app
