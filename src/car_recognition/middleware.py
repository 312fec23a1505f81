from __future__ import annotations

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import log_event
from .request_context import request_id_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("X-Request-ID")
        if not rid:
            rid = str(uuid.uuid4())
        token = request_id_var.set(rid)
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
            log_event(
                "request_finished",
                fields={
                    "status": int(response.status_code),
                    "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                },
            )
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response
