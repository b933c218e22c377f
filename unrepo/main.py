import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from unrepo.core.config import settings, validate_config
from unrepo.core.database import create_all_tables
from unrepo.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from unrepo.core.logging import configure_logging
from unrepo.core.middleware.request_id import RequestIdMiddleware
from unrepo.core.validation import validate_env
from unrepo.api import auth, chatbot, health, keys, research, wallet

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("unrepo")
    logger.info("Starting UnRepo gateway...")
    app.state.startup_time = time.time()
    if settings.AUTO_CREATE_TABLES:
        try:
            create_all_tables()
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"Table creation skipped: {e}")
    try:
        yield
    finally:
        logging.getLogger("unrepo").info("Stopping UnRepo gateway...")


app = FastAPI(title="UnRepo - API Gateway", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(auth.router)
app.include_router(keys.router)
app.include_router(research.router)
app.include_router(chatbot.router)
app.include_router(wallet.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("unrepo.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
