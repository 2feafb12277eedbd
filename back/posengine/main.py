import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import check_db_connection, create_db_and_tables
from .errors import ErrorKind, ServiceError, ValidationFailed
from .inventory_routes import router as inventory_router
from .order_routes import router as order_router
from .payment_routes import router as payment_router
from .public_routes import router as public_router
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

app = FastAPI(
    title="POS Engine API",
    description="Orders, payments and ingredient inventory for restaurant point of sale",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    # API responses carry order and payment data
    if request.url.path.startswith("/api"):
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
        response.headers["Pragma"] = "no-cache"
        response.headers["Expires"] = "0"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationFailed(
        "invalid_request", "Invalid request", details={"errors": jsonable_encoder(exc.errors())}
    )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


_HTTP_ERROR_CODES: dict[int, tuple[str, ErrorKind]] = {
    401: ("not_authenticated", ErrorKind.policy),
    403: ("forbidden", ErrorKind.policy),
    404: ("not_found", ErrorKind.state),
    405: ("method_not_allowed", ErrorKind.validation),
    503: ("service_unavailable", ErrorKind.system),
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Auth failures, unknown routes and health checks share the ServiceError body."""
    code, kind = _HTTP_ERROR_CODES.get(exc.status_code, ("http_error", ErrorKind.validation))
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "error": code, "kind": kind.value},
        headers=getattr(exc, "headers", None),
    )


app.include_router(order_router, prefix=API_PREFIX, tags=["Orders"])
app.include_router(payment_router, prefix=API_PREFIX, tags=["Payments"])
app.include_router(inventory_router, prefix=f"{API_PREFIX}/inventory", tags=["Inventory"])
app.include_router(public_router, prefix=f"{API_PREFIX}/public", tags=["Public"])


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting application...")
    create_db_and_tables()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
