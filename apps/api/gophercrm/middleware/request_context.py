from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from gophercrm.context import reset_actor_id, reset_correlation_id, set_actor_id, set_correlation_id
from gophercrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("gophercrm.request")

CORRELATION_HEADER = "x-correlation-id"


class RequestContextMiddleware:
    """Pure ASGI middleware owning the per-request context.

    Stamps the correlation id (from ``x-correlation-id`` or a fresh uuid4)
    into the context var, echoes it on the response, and records one
    ``http.request`` log line plus the request metrics once the response
    has started.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = Headers(scope=scope).get(CORRELATION_HEADER) or str(uuid.uuid4())
        scope.setdefault("state", {})["correlation_id"] = correlation_id
        correlation_token = set_correlation_id(correlation_id)
        actor_token = set_actor_id(None)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        status_code = 500
        started = time.perf_counter()

        async def send_with_context(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message)[CORRELATION_HEADER] = correlation_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_context)
        except Exception:
            self._observe(scope, 500, started, failed=True)
            raise
        else:
            self._observe(scope, status_code, started, failed=False)
        finally:
            reset_actor_id(actor_token)
            reset_correlation_id(correlation_token)

    def _observe(self, scope: Scope, status_code: int, started: float, *, failed: bool) -> None:
        duration = time.perf_counter() - started
        method = scope.get("method", "")
        path = resolve_http_path_label(Request(scope))
        observe_http_request(method=method, path=path, status=status_code, duration=duration)
        fields = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
