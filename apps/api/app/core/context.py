from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_company_id, set_company_id


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    company_id: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        company_id = request.headers.get("x-company-id") or None
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            company_id=company_id,
        )
        token = set_company_id(company_id)
        try:
            response = await call_next(request)
        finally:
            reset_company_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
