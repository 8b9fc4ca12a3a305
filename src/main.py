import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from src.config.logging_config import configure_logging
from src.config.settings import settings
from src.database.client import close_db, init_db
from src.features.auth.dependencies import close_identity_gateway
from src.features.auth.exceptions import AuthFlowException
from src.features.auth.router import router as auth_router
from src.features.device.router import router as device_router
from src.shared.rate_limit import limiter, rate_limit_handler

logger = logging.getLogger(__name__)


async def auth_flow_exception_handler(request: Request, exc: AuthFlowException) -> JSONResponse:
    """Render auth flow failures with the stable reason the mobile client routes on."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=exc.headers)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    configure_logging()
    await init_db()
    logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")
    yield
    # Shutdown
    await close_identity_gateway()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_exception_handler(AuthFlowException, auth_flow_exception_handler)
app.add_middleware(SlowAPIMiddleware)

# Mobile clients send no Origin header; CORS only matters for the web build
if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Maintenance-Key"],
        max_age=600,
    )

# Router Registration
routers: list[APIRouter] = [
    auth_router,
    device_router,
]

for router in routers:
    app.include_router(router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"message": settings.app_name, "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
