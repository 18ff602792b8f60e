"""FastAPI application for the Petstore API."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from .contract import ContractDispatcher, load_contract
from .database import Database
from .errors import AppError, from_http_exception, translate_error
from .handlers import HANDLERS, service_scope
from .models import HealthResponse, ServiceInfo

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
SERVICE_VERSION = "1.0.0"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Helmet-style defaults for a JSON API. HSTS is left to the TLS terminator.
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
    "Referrer-Policy": "no-referrer",
}


@dataclass(frozen=True)
class Settings:
    """Application configuration."""

    database_url: str
    contract_path: Path
    cors_origins: Tuple[str, ...]
    log_level: str
    host: str
    port: int
    rate_limit_max: int
    rate_limit_window: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings loaded from environment variables."""

    project_root = PACKAGE_DIR.parent
    default_db_path = project_root / "petstore.db"
    origins = os.getenv("CORS_ORIGIN", "*")
    return Settings(
        database_url=os.getenv("POSTGRES_URL", f"sqlite:///{default_db_path}"),
        contract_path=Path(os.getenv("CONTRACT_PATH", str(PACKAGE_DIR / "contracts" / "petstore.yaml"))),
        cors_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", "100")),
        rate_limit_window=os.getenv("RATE_LIMIT_WINDOW", "15 minutes"),
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the server process."""

    logging.basicConfig(level=level, format=LOG_FORMAT)


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    """Build the application.

    The interface document is loaded and every declared operation is bound to
    its handler before the app is returned, so a missing handler fails here
    rather than on the first request.
    """

    settings = settings or get_settings()
    db = db or Database(settings.database_url)
    contract = load_contract(settings.contract_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db.create_all()
        logger.info("Database ready at %s", db.engine.url.render_as_string(hide_password=True))
        try:
            yield
        finally:
            logger.info("Shutting down, closing database connections")
            db.dispose()

    app = FastAPI(
        title="Petstore API",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.database = db
    app.state.contract = contract

    # One window shared by every route, keyed on the client address.
    app.state.limiter = Limiter(
        key_func=get_remote_address,
        application_limits=[f"{settings.rate_limit_max} per {settings.rate_limit_window}"],
    )
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else list(settings.cors_origins),
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return translate_error(exc)

    # Must stay sync: slowapi calls it without awaiting for sync endpoints.
    def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        response = translate_error(from_http_exception(exc, request.url.path))
        response.headers.update(exc.headers or {})
        return response

    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RateLimitExceeded, http_error_handler)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        """Probe the database connection."""

        connected = db.ping()
        return HealthResponse(
            status="healthy" if connected else "unhealthy",
            timestamp=datetime.now(timezone.utc),
            database="connected" if connected else "disconnected",
        )

    @app.get("/", response_model=ServiceInfo)
    def root() -> ServiceInfo:
        """Static service metadata."""

        return ServiceInfo(
            name="Petstore API",
            version=SERVICE_VERSION,
            description="Python backend for the Petstore API based on OpenAPI 3.0",
            documentation="/docs/openapi.yaml",
            endpoints={"health": "/health", "pets": "/pet", "categories": "/category"},
        )

    @app.get("/docs/openapi.yaml", response_class=PlainTextResponse)
    def serve_openapi_yaml() -> str:
        """Serve the raw interface document."""

        return settings.contract_path.read_text(encoding="utf-8")

    ContractDispatcher(contract, HANDLERS, lambda: service_scope(db)).mount(app)
    return app


def run() -> None:
    """Run the API with uvicorn."""

    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


app = create_app()
