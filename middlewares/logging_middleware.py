"""
Middleware для логирования HTTP-запросов и исключений.

Цели:
- видеть каждый запрос и какой участник его отправил
- получать полный traceback и контекст, если упало в любом месте обработчика
"""

import logging
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"
TRACE_HEADER = "X-Trace-Id"


def _truncate(text: Optional[str], limit: int = 200) -> Optional[str]:
    if text is None:
        return None
    text = text.replace("\n", "\\n")
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class LoggingMiddleware(BaseHTTPMiddleware):
    """Логирует старт/финиш обработки запроса + исключения с контекстом."""

    def __init__(self, app, log_success: bool = True):
        super().__init__(app)
        self.log_success = log_success

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()

        actor_id = request.headers.get(ACTOR_HEADER)
        path = _truncate(request.url.path)
        query = _truncate(request.url.query) or None

        # Корреляционный ID на время обработки одного запроса
        trace_id = f"{int(time.time() * 1000)}:{actor_id or 'na'}"
        request.state.trace_id = trace_id

        logger.info(
            "IN  trace=%s method=%s path=%s actor=%s query=%s",
            trace_id,
            request.method,
            path,
            actor_id,
            query,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            ms = (time.monotonic() - started) * 1000
            logger.error(
                "ERR trace=%s method=%s path=%s actor=%s time_ms=%.1f err=%s",
                trace_id,
                request.method,
                path,
                actor_id,
                ms,
                repr(e),
                exc_info=True,
            )
            raise

        ms = (time.monotonic() - started) * 1000
        if self.log_success:
            logger.info(
                "OUT trace=%s method=%s path=%s actor=%s status=%s time_ms=%.1f",
                trace_id,
                request.method,
                path,
                actor_id,
                response.status_code,
                ms,
            )
        response.headers[TRACE_HEADER] = trace_id
        return response
