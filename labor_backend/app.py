"""
FastAPI application entry point for the lab backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from labor_backend.config import get_settings
from labor_backend.routes import router

logger = logging.getLogger(__name__)


async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted(
        {str(err["loc"][-1]) for err in exc.errors() if err.get("loc")}
    )
    logger.info(f"Rejected {request.url.path}: invalid fields {fields}")
    return JSONResponse(status_code=400, content={"error": "Fehlende Daten"})


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    app = FastAPI(title="Virtuelles Labor Backend", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    @app.get("/")
    def root():
        return {"message": "Backend läuft"}

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
