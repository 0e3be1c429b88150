"""
Request context middleware.

Binds the request metadata (ip, method, uri, user agent) that log records
pick up, and records per-request metrics and an access log line.
"""

import time
from typing import Any, Dict

from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..core.identity import client_ip
from ..core.log_record import RequestMeta, Severity, bind_request_meta, reset_request_meta


def request_meta_from(request: Request) -> RequestMeta:
    uri = request.url.path
    if request.url.query:
        uri += "?" + request.url.query
    return RequestMeta(
        ip=client_ip(request),
        method=request.method,
        uri=uri,
        user_agent=request.headers.get("user-agent", "unknown"),
    )


def route_label(scope: Scope) -> str:
    """Route template for metric labels; raw paths would explode cardinality."""
    route = scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class RequestContextMiddleware:
    """Pure ASGI middleware so the context var is set in the handler's task."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        meta = request_meta_from(request)
        token = bind_request_meta(meta)
        status: Dict[str, Any] = {"code": 500}
        start = time.perf_counter()

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start
            state = scope["app"].state
            metrics = getattr(state, "metrics", None)
            if metrics is not None:
                metrics.record_request(meta.method, route_label(scope), status["code"], duration)
            fanout = getattr(state, "fanout_logger", None)
            if fanout is not None:
                fanout.emit(
                    Severity.DEBUG,
                    "Request completed",
                    {"status_code": status["code"], "duration_ms": round(duration * 1000, 2)},
                )
            reset_request_meta(token)
