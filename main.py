import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from loopdriver.api.loops import router as loops_router
from loopdriver.api.snapshots import router as snapshots_router
from loopdriver.core.config import PROJECT_ROOT
from loopdriver.llm.judge import build_progress_detector
from loopdriver.services.loop_registry import LoopRegistry
from loopdriver.utils.logging_config import setup_logging

setup_logging(level=logging.INFO)
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests may install their own registry before start-up
    if getattr(app.state, "loop_registry", None) is None:
        app.state.loop_registry = LoopRegistry(
            PROJECT_ROOT,
            progress_detector=build_progress_detector(),
        )
        logger.info("Loop registry ready for %s", PROJECT_ROOT)
    yield
    await app.state.loop_registry.shutdown()
    app.state.loop_registry = None


app = FastAPI(title="Loop Driver API", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise
        process_time = (time.time() - start_time) * 1000
        logger.info(
            "Outgoing: %s %s - Status: %d - Time: %.2fms",
            request.method, request.url.path, response.status_code, process_time,
        )
        return response


app.add_middleware(LoggingMiddleware)


# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}


app.include_router(loops_router)
app.include_router(snapshots_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
