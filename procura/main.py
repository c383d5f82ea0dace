"""
Procura OS API application.
"""
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from procura.api import orders, quotes, requests, rfqs
from procura.api.serializers import error_body
from procura.core.config import settings
from procura.core.errors import ProcuraError
from procura.core.logging import get_logger, setup_logging
from procura.db.session import SessionFactory, build_engine, build_session_factory, init_db
from procura.services.reasoning import ReasoningAdvisor, get_advisor

logger = get_logger(__name__)


def create_app(
    session_factory: Optional[SessionFactory] = None,
    advisor: Optional[ReasoningAdvisor] = None,
) -> FastAPI:
    """
    Build the API. The engine and its pool are created in the lifespan unless
    a session factory is injected (tests, embedding).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        engine = None
        if session_factory is None:
            engine = build_engine()
            app.state.session_factory = build_session_factory(engine)
            init_db(engine, app.state.session_factory)
        else:
            app.state.session_factory = session_factory
        app.state.advisor = advisor or get_advisor()
        logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")

        yield

        if engine is not None:
            engine.dispose()
        logger.info(f"{settings.APP_NAME} shutting down")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Sourcing-and-quoting workflow engine",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============= ERROR HANDLERS =============

    @app.exception_handler(ProcuraError)
    async def procura_error_handler(request: Request, exc: ProcuraError):
        log = logger.error if exc.http_status >= 500 else logger.info
        log(
            f"{exc.code}: {exc.message}",
            extra={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(exc.message, exc.code, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
        return JSONResponse(
            status_code=400,
            content=error_body(message, "VALIDATION_ERROR", {"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors
            ]}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unexpected error: {exc}",
            exc_info=True,
            extra={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(status_code=500, content=error_body("Internal server error", "UNEXPECTED_ERROR"))

    # ============= ROUTES =============

    app.include_router(requests.router)
    app.include_router(rfqs.router)
    app.include_router(quotes.router)
    app.include_router(orders.router)

    @app.get("/health")
    async def health():
        return {"success": True, "data": {"status": "ok", "version": settings.APP_VERSION}}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("procura.main:app", host="0.0.0.0", port=8000)
