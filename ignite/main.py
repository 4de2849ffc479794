# ignite/main.py
import os, logging, uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Rate limiting
from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded

from .db import check_db_health, is_sweep_scheduler_enabled
from .privacy_utils import truncate_request_id
from .accounts.auth_routes import router as auth_router, limiter
from .accounts.routes import router as jobs_router
from .accounts.errors import AccountError, ErrorCode, InternalError
from .accounts.services import AccountServices, build_services

# =========================
# Environment & Constants
# =========================
ALLOWED = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
REQUEST_ID_HEADER = "X-Request-ID"

# =========================
# Logging
# =========================
logger = logging.getLogger("ignite")
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# =========================
# Error Envelope
# =========================
def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    if not rid:
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
    return rid


def error_json(
    code: str,
    message: str,
    status: int,
    request_id: str,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content = {"code": code, "message": message, "request_id": request_id}
    if extra:
        content.update(extra)
    headers = dict(headers or {})
    headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(status_code=status, content=content, headers=headers)


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc), "message": str(err.get("msg", ""))})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccountError)
    async def account_error_handler(request: Request, exc: AccountError):
        rid = _request_id(request)
        headers = {}
        if "retryAfter" in exc.extra:
            headers["Retry-After"] = str(exc.extra["retryAfter"])
        logger.info("[%s] %s %s -> %s", truncate_request_id(rid), request.method, request.url.path, exc.code.value)
        return error_json(exc.code.value, exc.message, exc.status_code, rid, exc.extra, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        rid = _request_id(request)
        return error_json(
            ErrorCode.VALIDATION_ERROR.value, "Invalid input.", 400, rid,
            {"details": _validation_details(exc)},
        )

    @app.exception_handler(RateLimitExceeded)
    async def ratelimit_handler(request: Request, exc: RateLimitExceeded):
        rid = _request_id(request)
        logger.warning("[%s] rate limited %s %s", truncate_request_id(rid), request.method, request.url.path)
        return error_json(ErrorCode.RATE_LIMIT.value, "Too many requests. Please try again later.", 429, rid)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):
        rid = _request_id(request)
        if isinstance(exc.detail, dict):
            return error_json(
                exc.detail.get("code", "HTTP_ERROR"),
                exc.detail.get("message", "Request error."),
                exc.status_code,
                rid,
            )
        return error_json("HTTP_ERROR", str(exc.detail), exc.status_code, rid)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.error("[%s] Unhandled error on %s %s", truncate_request_id(rid), request.method, request.url.path, exc_info=exc)
        err = InternalError()
        return error_json(err.code.value, err.message, err.status_code, rid)


# =========================
# App Factory
# =========================
def create_app(services: Optional[AccountServices] = None) -> FastAPI:
    """
    Build the API.

    Args:
        services: Pre-built component graph (tests pass in-memory fakes).
            Defaults to build_services() configured from the environment.
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        started = False
        if is_sweep_scheduler_enabled():
            services.scheduler.start()
            started = True
        try:
            yield
        finally:
            if started:
                services.scheduler.stop()

    app = FastAPI(title="Ignite Membership API", lifespan=lifespan)
    app.state.services = services
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in ALLOWED.split(",") if o.strip()],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(jobs_router)

    @app.get("/health")
    def health():
        return {"status": "ok", **check_db_health(app.state.services.store)}

    logger.info("App created (store=%s, otp=%s)", services.store.backend_name, services.otp_service.get_provider_name())
    return app


app = create_app()
