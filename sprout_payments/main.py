import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from sprout_payments.config import get_settings
from sprout_payments.database import Base, engine
from sprout_payments.errors import (
    PaymentServiceError,
    ProviderError,
    RateLimitExceeded,
    StorageError,
    ValidationError,
)
from sprout_payments.routers import analyses, razorpay, reconciliation, stripe
from sprout_payments.utils.redaction import redact

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
}

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Sprout Payments",
    description="Orders, subscriptions and analysis credits for the Sprout plant app",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def cors_headers(request: Request, call_next):
    # Bare OPTIONS requests (no CORS request headers) still get a 200.
    if request.method == "OPTIONS" and "access-control-request-method" not in request.headers:
        return PlainTextResponse("ok", headers=CORS_HEADERS)
    response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


def _debug_enabled(request: Request) -> bool:
    settings_provider = request.app.dependency_overrides.get(get_settings, get_settings)
    return settings_provider().debug


def _error_response(request: Request, exc: Exception, status_code: int, body: dict) -> JSONResponse:
    if _debug_enabled(request):
        body["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(PaymentServiceError)
async def payment_error_handler(request: Request, exc: PaymentServiceError):
    if isinstance(exc, (ProviderError, StorageError)):
        logger.error(
            "%s on %s %s: %s details=%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
            redact(exc.details),
        )
    response = _error_response(request, exc, exc.status_code, exc.to_dict())
    if isinstance(exc, RateLimitExceeded):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError(details=redact(jsonable_encoder(exc.errors())))
    return _error_response(request, exc, error.status_code, error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(request, exc, 500, {"error": "Internal server error", "details": None})


app.include_router(razorpay.router)
app.include_router(stripe.router)
app.include_router(analyses.router)
app.include_router(reconciliation.router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
