"""Request hooks, error handlers and the change stream."""

from __future__ import annotations

import time
import uuid

from flask import Blueprint, Flask, Response, g, jsonify, request

from tradewatch.core.logs import get_logger
from tradewatch.errors import TradewatchError
from tradewatch.web.context import services

log = get_logger("TradewatchWeb")

stream_bp = Blueprint("stream", __name__)


def _start_request_timer() -> None:
    g.req_start = time.perf_counter()
    g.req_id = uuid.uuid4().hex[:8]
    log.debug("http start req_id=%s path=%s", g.req_id, request.path)


def _end_request_timer(resp: Response) -> Response:
    start_ts = getattr(g, "req_start", None)
    if start_ts is not None:
        log.debug(
            "http done req_id=%s path=%s status=%s duration_ms=%.1f",
            getattr(g, "req_id", "-"),
            request.path,
            resp.status_code,
            (time.perf_counter() - start_ts) * 1000.0,
        )
    return resp


def relax_csp(resp: Response) -> Response:
    """Allow the inline reload script on rendered pages."""
    resp.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'"
    )
    return resp


def _handle_app_error(err: TradewatchError):
    if err.status >= 500:
        log.error("req_id=%s %s", getattr(g, "req_id", "-"), err.message)
    return jsonify(err.to_dict()), err.status


def register_request_hooks(app: Flask) -> None:
    """Attach common request/response hooks to the Flask app."""
    app.before_request(_start_request_timer)
    app.after_request(_end_request_timer)
    app.after_request(relax_csp)
    app.register_error_handler(TradewatchError, _handle_app_error)


@stream_bp.route("/stream/trading")
def stream_trading() -> Response:
    svc = services()
    transport = svc.transport
    channel = svc.settings.channel
    ping_sec = svc.settings.sse_ping_sec

    def event_stream():
        feed = transport.listen(channel, ping_sec)
        first = True
        try:
            for payload in feed:
                if payload is None:
                    yield ": connected\n\n" if first else ": ping\n\n"
                    first = False
                    continue
                # one event per frame; payloads are single-line JSON
                yield f"data: {payload}\n\n"
        finally:
            feed.close()
            log.debug("stream closed channel=%s", channel)

    return Response(
        event_stream(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
