from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pushlab.api.v1.router import api_router
from pushlab.config import get_settings
from pushlab.core.database import close_db, init_db
from pushlab.core.exceptions import PushlabError
from pushlab.core.logging import configure_logging
from pushlab.middleware import TelemetryMiddleware
from pushlab.services.push import close_push_sender

settings = get_settings()
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("startup", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    await init_db()
    logger.info("database_initialized")
    yield
    # Shutdown
    await close_push_sender()
    await close_db()
    logger.info("shutdown_complete")


app = FastAPI(
    title=settings.APP_NAME,
    description="User segmentation and A/B push notification experiments",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)


@app.exception_handler(PushlabError)
async def pushlab_error_handler(request: Request, exc: PushlabError):
    logger.warning(
        "request_rejected",
        path=request.url.path,
        error=exc.kind,
        detail=exc.message,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
