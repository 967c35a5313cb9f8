import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .services.runtime import build_runtime

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup: tests may install their own runtime before the app starts.
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime()
    logger.info("Workflow engine startup complete")

    yield

    # Shutdown
    if owns_runtime:
        await app.state.runtime.aclose()
    logger.info("Workflow engine shutdown complete")


app = FastAPI(
    title="Workflow Engine",
    description="Validates and executes node graphs of text prompts, uploaded media, image crops, video frame extraction and model inference.",
    lifespan=lifespan,
)

# Add CORS middleware
# Use regex to allow all Vercel domains and localhost
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],  # Empty list - use regex instead
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
