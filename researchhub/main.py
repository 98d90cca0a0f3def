import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from researchhub/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from researchhub.core.config import settings, validate_config
from researchhub.core.logging import configure_logging
from researchhub.core.middleware.request_id import RequestIdMiddleware
from researchhub.core.validation import validate_env
from researchhub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from researchhub.api import health, plan_enforcement, points, points_plans
from researchhub.storage.factory import get_storage


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("researchhub")
    logger.info("Starting ResearchHub points service...")
    app.state.startup_time = time.time()
    # Storage is selected once, before the first request
    app.state.storage = get_storage()
    try:
        yield
    finally:
        logger.info("Stopping ResearchHub points service...")


def _cors_origins() -> list:
    return [o.strip() for o in (settings.CORS_ALLOWED_ORIGINS or "").split(",") if o.strip()]


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_env()
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    app = FastAPI(title="ResearchHub - Points & Plans", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    origins = _cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.root_router, tags=["health"])
    app.include_router(points.router, tags=["points"])
    app.include_router(points_plans.router, tags=["points-plans"])
    app.include_router(plan_enforcement.router, tags=["plan-enforcement"])
    return app


app = create_app()
