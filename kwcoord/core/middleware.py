"""HTTP middleware for request correlation.

Every request/response pair carries a request id: the caller's
``X-Request-ID`` when it is a plausible token, otherwise a fresh UUID. The
id lives in a contextvar for the duration of the request so coordination
logs (lock contention, store failures, webhook outcomes) can be joined with
the access log line emitted here.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from fastapi import Request, Response

from kwcoord.core.config import settings
from kwcoord.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)

# Ids are echoed into headers and logs verbatim.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _resolve_request_id(incoming: str | None) -> str:
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a request id and timing headers, and log the request.

    Returns:
        The downstream response with the request id header and
        ``X-Request-Duration-ms`` added.
    """

    header_name = settings.log.request_id_header
    request_id = _resolve_request_id(request.headers.get(header_name))
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
