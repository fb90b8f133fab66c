from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mocflow import __version__
from mocflow.api.routers import change_requests, health, notifications
from mocflow.api.schemas.common import ErrorResponse
from mocflow.core.config import get_settings
from mocflow.core.errors import MocflowError
from mocflow.core.logger import configure_from_settings
from mocflow.db.session import get_engine, init_db

settings = get_settings()
configure_from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_schema:
        init_db(get_engine())
    yield


app = FastAPI(
    title=settings.app_name,
    description="Management-of-Change approval workflow engine",
    version=__version__,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)


@app.exception_handler(MocflowError)
async def workflow_error_handler(request: Request, exc: MocflowError):
    body = ErrorResponse(error=exc.__class__.__name__, detail=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.http_status, content=body.model_dump())


# Include routers
app.include_router(health.router)
app.include_router(change_requests.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
