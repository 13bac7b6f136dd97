"""Shared FastAPI plumbing: request metrics, trace ids and error mapping."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from routepay.common.config import settings
from routepay.common.errors import AlreadyProcessed, InvalidSignature, RoutePayError, TransactionNotFound
from routepay.common.logging import logger, trace_id_ctx
from routepay.common.metrics import http_request_duration_seconds, http_requests_total

ERROR_STATUS = ((AlreadyProcessed, 409), (TransactionNotFound, 404), (InvalidSignature, 401))


def status_for(exc: RoutePayError) -> int:
    for kind, status_code in ERROR_STATUS:
        if isinstance(exc, kind):
            return status_code
    return 400


def install_http_plumbing(app: FastAPI) -> None:
    """Attach the metrics middleware and the `RoutePayError` handler."""

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(RoutePayError)
    async def routepay_error_handler(_: Request, exc: RoutePayError):
        status_code = status_for(exc)
        logger.info("request_rejected code=%s status_code=%s error=%s", exc.code, status_code, exc)
        return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": str(exc)})
