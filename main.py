"""Main FastAPI application for the medical claim liquidation engine."""

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from contextlib import asynccontextmanager
import time

from app import TITLE, DESCRIPTION, VERSION, CONTACT, TAGS_METADATA
from app.apis.v1.router import router as liquidation_router
from app.apis.v1.types_out import HealthResponse
from app.core.v1.engine_context import EngineContext
from app.core.v1.log_manager import LogManager
from app.core.v1.exceptions import (
    AppException,
    CaseNotFoundException,
    ConcurrencyError,
    DatabaseException,
    ExtractionError,
    LiquidationCancelledError,
    LiquidationException,
    OCRException,
    ReconciliationError,
    RuleEvaluationError,
    RuleNotFoundException,
    StateTransitionError,
    StorageException,
    ValidationException,
)
from app.settings.v1.settings import SETTINGS

RUN_ERROR_CODES = {
    ExtractionError: "EXTRACTION_ERROR",
    RuleEvaluationError: "RULE_EVALUATION_ERROR",
    ReconciliationError: "RECONCILIATION_ERROR",
}


# Initialize logger
logger = LogManager(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting liquidation engine API")
    logger.info(f"Environment: {'Production' if SETTINGS.GENERAL.PRODUCTION else 'Development'}")
    logger.info(f"Version: {VERSION}")

    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        app.state.engine = EngineContext()

    try:
        app.state.engine.mongodb_manager.ping()
        logger.info("Database connection validated successfully")
    except DatabaseException as err:
        # Requests report 503 until the database answers
        logger.error(f"Database connection validation failed: {err.message}")

    yield

    # Shutdown
    logger.info("Shutting down liquidation engine API")
    if owns_engine:
        app.state.engine.close()
        app.state.engine = None


# Create FastAPI application
app = FastAPI(
    title=TITLE,
    description=DESCRIPTION,
    version=VERSION,
    contact=CONTACT,
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
    docs_url="/docs" if not SETTINGS.GENERAL.PRODUCTION else None,
    redoc_url="/redoc" if not SETTINGS.GENERAL.PRODUCTION else None
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.GENERAL.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def error_response(status_code: int, error_code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "error_message": message,
            "timestamp": time.time(),
            **extra
        }
    )


# Custom exception handlers
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """Handle application exceptions."""
    logger.error(f"Application exception: {exc.message}")
    return error_response(500, "APPLICATION_ERROR", exc.message)


@app.exception_handler(ValidationException)
async def validation_exception_handler(request: Request, exc: ValidationException):
    """Handle validation exceptions; invalid state transitions answer 409."""
    if isinstance(exc, StateTransitionError):
        logger.warning(f"Invalid state transition: {exc.message}")
        return error_response(409, "INVALID_STATE", exc.message)

    logger.warning(f"Validation error: {exc.message}")
    return error_response(400, "VALIDATION_ERROR", exc.message)


@app.exception_handler(CaseNotFoundException)
async def case_not_found_handler(request: Request, exc: CaseNotFoundException):
    logger.warning(f"Case not found: {exc.message}")
    return error_response(404, "CASE_NOT_FOUND", exc.message)


@app.exception_handler(RuleNotFoundException)
async def rule_not_found_handler(request: Request, exc: RuleNotFoundException):
    logger.warning(f"Rule not found: {exc.message}")
    return error_response(404, "RULE_NOT_FOUND", exc.message)


@app.exception_handler(LiquidationException)
async def liquidation_exception_handler(request: Request, exc: LiquidationException):
    """Handle run-level errors; the run messages travel with the response."""
    if isinstance(exc, ConcurrencyError):
        logger.warning(f"Case busy: {exc.message}")
        return error_response(409, "CASE_BUSY", exc.message, messages=exc.messages)

    if isinstance(exc, LiquidationCancelledError):
        logger.warning(f"Liquidation cancelled: {exc.message}")
        return error_response(409, "LIQUIDATION_CANCELLED", exc.message, messages=exc.messages)

    error_code = RUN_ERROR_CODES.get(type(exc), "LIQUIDATION_ERROR")
    logger.error(f"Liquidation failed: {exc.message}", error_code=error_code)
    return error_response(422, error_code, exc.message, messages=exc.messages)


@app.exception_handler(StorageException)
async def storage_exception_handler(request: Request, exc: StorageException):
    """Handle storage exceptions."""
    logger.error(f"Storage error: {exc.message}")
    return error_response(503, "STORAGE_ERROR", "Storage service temporarily unavailable")


@app.exception_handler(OCRException)
async def ocr_exception_handler(request: Request, exc: OCRException):
    """Handle OCR processing exceptions."""
    logger.error(f"OCR processing error: {exc.message}")
    return error_response(503, "OCR_ERROR", "OCR service temporarily unavailable")


@app.exception_handler(DatabaseException)
async def database_exception_handler(request: Request, exc: DatabaseException):
    """Handle database exceptions."""
    logger.error(f"Database error: {exc.message}")
    return error_response(503, "DATABASE_ERROR", "Database service temporarily unavailable")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", exc.detail)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning(
        "Request validation error occurred",
        path=request.url.path,
        method=request.method,
        errors=len(exc.errors())
    )
    return error_response(
        422,
        "REQUEST_VALIDATION_ERROR",
        "Request validation failed",
        details=jsonable_encoder(exc.errors())
    )


# Middleware for request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = time.time()

    logger.log_request(
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.log_response(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration=process_time
    )

    return response


# Include routers
app.include_router(liquidation_router, prefix="/api/v1")


# Root endpoint
@app.get("/", tags=["health"])
async def root():
    """Root endpoint with basic API information."""
    return {
        "message": "Medical claim liquidation engine API",
        "version": VERSION,
        "status": "healthy",
        "timestamp": time.time(),
        "docs_url": "/docs" if not SETTINGS.GENERAL.PRODUCTION else None,
        "api_version": "v1"
    }


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(request: Request):
    """Health check including the database connection."""
    engine = getattr(request.app.state, "engine", None)
    database = "unavailable"
    if engine is not None:
        try:
            engine.mongodb_manager.ping()
            database = "connected"
        except DatabaseException:
            database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "timestamp": time.time(),
        "version": VERSION,
        "environment": "production" if SETTINGS.GENERAL.PRODUCTION else "development",
        "database": database
    }


# Run the application
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=not SETTINGS.GENERAL.PRODUCTION,
        log_level=SETTINGS.GENERAL.LOG_LEVEL.lower(),
        access_log=True
    )
