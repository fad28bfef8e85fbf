"""
Control API entrypoint.
"""

from contextlib import asynccontextmanager
from loguru import logger
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from control_api.config import settings
from control_api.conductor import Conductor
from control_api.exceptions import FileSimError
from control_api.server.router import router as servers_router
from control_api.status.router import router as status_router, ws_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the background loops, stop them again on shutdown.
    """
    if not hasattr(app.state, "conductor"):
        app.state.conductor = Conductor()
    logger.info(f"Starting control plane for namespace {settings.namespace}")
    await app.state.conductor.start()
    try:
        yield
    finally:
        await app.state.conductor.stop()


app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)
app.include_router(servers_router, prefix="/api/servers", tags=["Servers"])
app.include_router(status_router, prefix="/api/status", tags=["Status"])
app.include_router(ws_router)
app.get("/ping")(lambda: {"message": "pong"})


@app.exception_handler(FileSimError)
async def file_sim_error_handler(request: Request, exc: FileSimError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.code}): {exc}")
    headers = {"Retry-After": str(max(1, int(settings.discovery_interval)))} if exc.retryable else None
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc), "code": exc.code},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return ORJSONResponse(
        status_code=400,
        content={"error": errors, "code": "validation_failed"},
    )
