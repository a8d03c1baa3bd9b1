from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from exceptions import SizefitError
from middleware import RequestContextMiddleware, error_response
from routers import compress, health, images
from session.store import image_store
from utils.logging import get_logger, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: configure logging, verify codecs. Shutdown: release records."""
    # --- Startup ---
    setup_logging()
    logger = get_logger("main")

    codecs = health.check_codecs()
    missing = [name for name, available in codecs.items() if not available]
    if missing:
        logger.warning(
            f"Missing codecs: {missing}",
            extra={"context": {"missing_codecs": missing}},
        )

    yield

    # --- Shutdown ---
    # Cancels in-flight attempts, drops every buffer, waits for workers
    await image_store.shutdown()
    logger.info("Sizefit shutting down")


app = FastAPI(
    title="Sizefit",
    description="Target-size image compressor",
    version=health.VERSION,
    lifespan=lifespan,
)

# CORS middleware
origins = [o.strip() for o in settings.allowed_origins.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["POST", "PATCH", "DELETE", "OPTIONS", "GET"],
    allow_headers=["Content-Type"],
    expose_headers=[
        "X-Original-Size",
        "X-Compressed-Size",
        "X-Target-Size",
        "X-Target-Met",
        "X-Final-Width",
        "X-Final-Height",
        "X-Final-Quality",
        "X-Final-Format",
        "X-Request-ID",
    ],
)

# RequestContextMiddleware handles: request ID, SizefitError responses
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(SizefitError)
async def sizefit_error_handler(request: Request, exc: SizefitError):
    return error_response(exc)


# Routers
app.include_router(health.router)
app.include_router(images.router)
app.include_router(compress.router)
