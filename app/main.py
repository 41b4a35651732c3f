from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.logging import configure_logging
from app.services.outbox_worker import start_outbox_worker_task
from app.models import event_outbox, task_trigger, time_clock_session  # noqa: F401
from app.routers.auth import router as auth_router
from app.routers.outbox import router as outbox_router
from app.routers.task_triggers import router as task_triggers_router
from app.routers.time_clock import router as time_clock_router

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_outbox_worker_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Outbox worker failed during shutdown")


app = FastAPI(
    title="FieldClock",
    version=VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception", extra={"path": request.url.path, "method": request.method})
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(time_clock_router)
app.include_router(task_triggers_router)
app.include_router(outbox_router)


@app.get("/")
def root():
    return {"status": "FieldClock running"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": VERSION,
    }
