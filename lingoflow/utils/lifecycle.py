# /lingoflow/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from lingoflow.utils.logging import setup_logging
from lingoflow.services.llm_service import llm_service
from lingoflow.services.session_service import session_registry

# This file manages the application's lifespan: logging and the session sweep
# job on startup, and discarding sessions and closing provider clients on
# shutdown.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")

    session_registry.start()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    session_registry.shutdown()
    await llm_service.cleanup()
