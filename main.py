from contextlib import asynccontextmanager
import logging
import os
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import crud
from client import DataClient
from db import Base
from errors import (
    AuthenticationFailed,
    ConstraintViolation,
    DataAccessError,
    EngineFailure,
    QueryValidationError,
    RecordNotFound,
    ServiceError,
    StoreConnectionError,
    TransactionError,
)
from routers import ALL_ROUTERS

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

STATUS_BY_ERROR = (
    (RecordNotFound, 404),
    (ConstraintViolation, 409),
    (QueryValidationError, 422),
    (TransactionError, 409),
    (StoreConnectionError, 503),
    (EngineFailure, 500),
)


def client_log_config() -> list:
    log = ["warn"]
    if os.getenv("APP_LOG_QUERIES") == "1":
        log.append("query")
    return log


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = DataClient(log=client_log_config(), omit={"users": {"password": True}})
    Base.metadata.create_all(bind=client.engine)
    if os.getenv("APP_SEED_CATEGORIES", "1") != "0":
        crud.seed_database(client)
    app.state.client = client
    logger.info("startup url=%s", client.engine.url.render_as_string(hide_password=True))
    try:
        yield
    finally:
        client.dispose()


app = FastAPI(title="IT Asset Registry API", lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(DataAccessError)
async def data_access_error_handler(request: Request, exc: DataAccessError):
    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("path=%s kind=%s error=%s", request.url.path, exc.kind, exc)
    else:
        logger.warning("path=%s kind=%s error=%s", request.url.path, exc.kind, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "kind": exc.kind})


@app.exception_handler(AuthenticationFailed)
async def authentication_failed_handler(request: Request, exc: AuthenticationFailed):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/")
def root():
    return {"message": "IT Asset Registry API", "docs": "/docs"}


for r in ALL_ROUTERS:
    app.include_router(r)
