from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .app_logging import init_logging
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location}: {error.get('msg', 'invalid value')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "invalid request"


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "validation_error", "message": _validation_message(exc)}},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    init_logging(level=settings.log_level, json_logs=settings.log_json)

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the missing secrets or switch unused providers back to stub."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    init_logging(
        app,
        level=settings.log_level,
        json_logs=settings.log_json,
        skip_paths={f"{settings.api_prefix}/dm/health"},
    )

    app.include_router(router)
    return app


app = create_app()
