import logging
import sqlite3
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from stepdocs.config import settings
from stepdocs.errors import ConcurrentModification, NotFound, StorageUnavailable
from stepdocs.routers import documents, maintenance, steps

logger = logging.getLogger("stepdocs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create or migrate the document store, then integrity-check it
    try:
        from stepdocs.database import init_db
        settings.data_path.mkdir(parents=True, exist_ok=True)
        init_db(settings.db_path)
        conn = sqlite3.connect(str(settings.db_path))
        result = conn.execute("PRAGMA integrity_check").fetchone()
        conn.close()
        if result and result[0] == "ok":
            logger.info("Database integrity check passed.")
        else:
            logger.error("DATABASE INTEGRITY CHECK FAILED: %s", result)
    except (OSError, sqlite3.Error) as exc:
        logger.error("Could not run startup migration/integrity check: %s", exc)
    yield


app = FastAPI(
    title="Step Document Versions",
    description="Version history and supersession chains for timeline step documents",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": f"{exc.kind} not found"})


@app.exception_handler(ConcurrentModification)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModification):
    return JSONResponse(
        status_code=409,
        content={"detail": "Step is being updated, try again"},
        headers={"Retry-After": str(settings.retry_after_seconds)},
    )


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


app.include_router(steps.router, prefix=settings.api_prefix)
app.include_router(documents.router, prefix=settings.api_prefix)
app.include_router(maintenance.router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
