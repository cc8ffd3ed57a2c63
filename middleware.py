import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from services.metrics import increment_http_requests
from services.observability import set_request_id

logger = logging.getLogger("payouts.http")


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
        start = time.time()

        # attach to request state and the logging context
        request.state.request_id = req_id
        set_request_id(req_id)

        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = req_id
            return response
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            increment_http_requests(_route_template(request), status)

            # never log headers or bodies
            logger.info(
                "http_request_end method=%s path=%s status=%s duration_ms=%s",
                request.method,
                request.url.path,
                status,
                duration_ms,
                extra={"request_id": req_id},
            )
            set_request_id(None)
