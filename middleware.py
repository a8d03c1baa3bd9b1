import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from exceptions import SizefitError


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request ID injection and uniform error rendering.

    Order of operations per request:
    1. Inject request ID (UUID)
    2. Process request, rendering SizefitError as JSON
    3. Add X-Request-ID to response
    """

    async def dispatch(self, request: Request, call_next):
        # 1. Request ID
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # 2. Process request
        try:
            response = await call_next(request)
        except SizefitError as exc:
            response = error_response(exc)

        # 3. Request ID header
        response.headers["X-Request-ID"] = request_id
        return response


def error_response(exc: SizefitError) -> JSONResponse:
    """Render a SizefitError as the standard JSON error body."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.error_code,
            "message": exc.message,
            **exc.details,
        },
    )
