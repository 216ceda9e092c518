from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
)
from backend.logger import configure_logging
from backend.recognizer import reload_index
from backend.routers import attendance, auth, core, queries, students
from backend.services.live_session import stop_all_loops
from database.db import StorageUnavailableError, create_tables

logger = configure_logging()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    reload_index()
    logger.info("ClassPulse API ready")
    yield
    stop_all_loops()


app = FastAPI(title="ClassPulse API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable(_request: Request, exc: StorageUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage busy. Please retry.", "retryable": True},
        headers={"Retry-After": "1"},
    )


app.include_router(core.router, tags=["Core"])
app.include_router(auth.router, tags=["Auth"])
app.include_router(students.router, tags=["Students"])
app.include_router(attendance.router, tags=["Attendance"])
app.include_router(queries.router, tags=["Queries"])
