"""FastAPI application wiring for Warfront."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warfront.api import routes
from warfront.api.runtime import ApiState, build_state
from warfront.config import configure_logging, get_settings
from warfront.domain.errors import ErrorCategory, Reason, WarfrontError

FORBIDDEN_REASONS = frozenset({Reason.NOT_RULER, Reason.NOT_LEADER, Reason.INSUFFICIENT_RANK})

CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.STATE_CONFLICT: 409,
    ErrorCategory.NOT_FOUND: 404,
}


def status_for(exc: WarfrontError) -> int:
    if exc.reason in FORBIDDEN_REASONS:
        return 403
    return CATEGORY_STATUS[exc.category]


async def warfront_error_handler(request: Request, exc: WarfrontError) -> JSONResponse:  # noqa: ARG001
    return JSONResponse(status_code=status_for(exc), content=exc.to_dict())


def create_app(*, state_factory: Callable[[], ApiState] = build_state) -> FastAPI:
    """Instantiate the FastAPI application with routing and lifecycle hooks."""

    settings = get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = state_factory()
        state.startup()
        app.state.api_state = state
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(title="Warfront API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(WarfrontError, warfront_error_handler)
    app.include_router(routes.router)
    return app


app = create_app()
