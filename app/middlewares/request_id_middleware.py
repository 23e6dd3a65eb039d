import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.utils.context import request_id_scope
from app.utils.logging import get_logger

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id and logs its outcome.

    An id forwarded by the gateway is reused so a request can be followed
    across services; otherwise a new UUID is generated. The id is echoed back
    in the response header and bound to every log line written while the
    request is handled.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = self._incoming_request_id(request) or str(uuid.uuid4())
        request.state.request_id = request_id

        with request_id_scope(request_id):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000

            get_logger().info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {elapsed_ms:.1f}ms"
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _incoming_request_id(request: Request) -> str:
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        if len(incoming) > MAX_REQUEST_ID_LENGTH or not incoming.isprintable():
            return ""
        return incoming
