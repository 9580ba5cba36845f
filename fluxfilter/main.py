from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from fluxfilter.api.routes import router
from fluxfilter.dependencies import get_database, get_dispatcher, get_settings, get_telemetry
from fluxfilter.logging_config import configure_application_logging

REQUEST_ID_HEADER = "X-Request-ID"


def health_check() -> dict[str, object]:
    dispatcher = get_dispatcher()
    return {
        "status": "ok",
        "authenticated": dispatcher.has_credential,
        "last_upstream_success_at": dispatcher.last_success_at,
        "events": get_telemetry().counts(),
    }


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_application_logging(get_settings())
    get_database()
    yield


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = _incoming_request_id(request) or str(uuid4())
    context_tokens = bind_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    )
    started_at = perf_counter()
    _emit_request_event("http.request.start", request, request_id)
    try:
        response = await call_next(request)
    except Exception as exc:
        _emit_request_event(
            "http.request.error",
            request,
            request_id,
            duration_ms=_elapsed_ms(started_at),
            error_type=type(exc).__name__,
        )
        raise
    finally:
        reset_contextvars(**context_tokens)

    response.headers[REQUEST_ID_HEADER] = request_id
    _emit_request_event(
        "http.request.finish",
        request,
        request_id,
        duration_ms=_elapsed_ms(started_at),
        status_code=response.status_code,
    )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="Fluxfilter API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


def _incoming_request_id(request: Request) -> str | None:
    raw_value = request.headers.get(REQUEST_ID_HEADER)
    if raw_value is None or not raw_value.strip():
        return None
    return raw_value.strip()


def _emit_request_event(
    event_name: str,
    request: Request,
    request_id: str,
    **attributes: Any,
) -> None:
    get_telemetry().emit(
        event_name,
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        **attributes,
    )


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)


app = create_app()
