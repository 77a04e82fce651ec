from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from app.core.config import CLEANUP_INTERVAL_MINUTES, CLEANUP_RETENTION_SECONDS
from app.core.logging import setup_logging
from app.core.init_db import init_db
from app.core.scheduler import start_cleanup_scheduler
from app.api.deps import get_dispatcher, get_location_store
from app.api.router import api_router
from dotenv import load_dotenv
load_dotenv()

setup_logging()
logger.info("Starting proximity alerts backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = start_cleanup_scheduler(
        get_location_store(),
        CLEANUP_INTERVAL_MINUTES,
        CLEANUP_RETENTION_SECONDS,
    )
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)

    # let in-flight alerts finish before the loop goes away
    dispatcher = get_dispatcher()
    if dispatcher is not None:
        await dispatcher.drain()


app = FastAPI(
    title="Proximity Alerts Backend",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Malformed request | path={request.url.path} errors={exc.errors()}")
    return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error(f"Unhandled error | path={request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# Same routes at the root and under the original /api base path
app.include_router(api_router)
app.include_router(api_router, prefix="/api")

# Init DB after app is created
init_db()

@app.get("/health")
def health():
    logger.debug("Health check hit")
    return {"status": "ok"}
