import logging
import uuid
from time import monotonic

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _route_path(request: Request) -> str:
    # Templated path keeps metric label cardinality bounded.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            elapsed = monotonic() - start
            path = _route_path(request)
            labels = {"method": request.method, "path": path, "status": str(status_code)}
            REQUEST_COUNT.labels(**labels).inc()
            REQUEST_LATENCY.labels(**labels).observe(elapsed)
            if status_code >= 500:
                REQUEST_ERRORS.labels(**labels).inc()
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.debug(
            "%s %s -> %s in %.3fs", request.method, path, status_code, elapsed
        )
        return response
