import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from readerpass.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var

# Gateways and proxies forward their own ids; anything else gets replaced
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_QUIET_PATHS = {"/healthz", "/readyz"}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the lifetime of the request and log completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    def _request_id(self, request) -> str:
        incoming = request.headers.get(self.header_name)
        if incoming and _ACCEPTED_ID.match(incoming):
            return incoming
        return str(uuid4())

    async def dispatch(self, request, call_next):
        rid = self._request_id(request)
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        level = logging.DEBUG if request.url.path in _QUIET_PATHS else logging.INFO
        logging.getLogger(LOGGER_NAME).log(
            level,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
