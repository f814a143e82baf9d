import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .database import init_db
from .errors import ApiError, StoreError, code_for_status
from .routers.jobs import router as jobs_router
from .routers.transcriptions import router as transcriptions_router
from .services.scheduler import start_scheduler, stop_scheduler
from .services.worker import get_worker
from .settings.config import settings
from .users import auth_backend, fastapi_users

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Scribe")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(jobs_router)
app.include_router(transcriptions_router)

# Session login / logout
app.include_router(fastapi_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"])


# -----------------------------------------------------
# JSON error bodies: {"error": <message>, "code": <code>}
# -----------------------------------------------------
def _error(status_code: int, message, code: str, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code}, headers=headers)


@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError):
    return _error(exc.status_code, exc.detail, exc.code, getattr(exc, "headers", None))


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail, code_for_status(exc.status_code), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    first = (exc.errors() or [{}])[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return _error(422, f"{loc}: {msg}" if loc else msg, "invalid_request")


@app.exception_handler(SQLAlchemyError)
async def _db_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return _error(500, "Database error", "database_error")


@app.exception_handler(StoreError)
async def _store_error_handler(request: Request, exc: StoreError):
    logger.error("Job store error on %s %s: %s", request.method, request.url.path, exc)
    return _error(500, "Database error", "database_error")


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error", "internal_error")


# ----------------------
# Lifecycle
# ----------------------
@app.on_event("startup")
async def on_startup():
    await init_db()
    start_scheduler()


@app.on_event("shutdown")
async def on_shutdown():
    stop_scheduler()
    await get_worker().stop_continuous()


@app.get("/health")
async def health():
    return {"status": "ok"}
