import time
import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from app.core.config import settings
from app.core.logging import setup_logging, request_id_ctx
from app.core.errors import QueueError
from app.core.db import init_models, SessionLocal
from app.api.router import api_router
from app.modules.events.outbox import run_outbox_relay
from app.platform.provider_registry import ProviderRegistry


setup_logging()
app = FastAPI(title=settings.APP_NAME)
app.state.providers = ProviderRegistry()

logger = logging.getLogger(__name__)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", "-")
    request_id_ctx.set(rid)
    response = await call_next(request)
    return response

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000
    formatted_process_time = f"{process_time:.2f}ms"

    logger.info(
        f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {formatted_process_time}"
    )

    return response

@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    logger.info(f"Rejected {request.method} {request.url.path}: {exc.code} ({exc.message})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An internal server error occurred."},
    )


@app.on_event("startup")
async def on_startup():
    await init_models()
    if settings.OUTBOX_ENABLED and settings.ENV != "test":
        bus = app.state.providers.event_bus()
        app.state.outbox_task = asyncio.create_task(run_outbox_relay(SessionLocal, bus))

@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "outbox_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await app.state.providers.close()


app.include_router(api_router, prefix=settings.API_PREFIX)
