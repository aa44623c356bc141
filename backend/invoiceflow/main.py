import logging
import math

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from invoiceflow.api.v1.invoices import router as invoices_router
from invoiceflow.api.v1.settings import router as settings_router
from invoiceflow.core.config import get_settings
from invoiceflow.core.dependencies import get_pipeline, init_db
from invoiceflow.errors import (
    AuditCooldownError,
    AuditInProgressError,
    ConfigurationError,
    DraftingServiceError,
    EscalationNotAllowedError,
    EscalationServiceError,
    InvalidTransitionError,
    InvoiceNotFoundError,
)

settings = get_settings()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="InvoiceFlow Audit API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    current = get_settings()
    errors = current.validate_required_config()
    if errors:
        if current.environment.lower() == "production":
            raise RuntimeError(f"Configuration validation failed in production environment: {'; '.join(errors)}")
        logger.warning("Configuration problems (environment=%s): %s", current.environment, "; ".join(errors))
    init_db()


@app.on_event("shutdown")
async def _shutdown_jobs():
    # Let scheduled notification dispatches finish before the loop goes away.
    if get_pipeline.cache_info().currsize:
        await get_pipeline().notifications.drain()


app.include_router(invoices_router, prefix="/api/v1", tags=["invoices"])
app.include_router(settings_router, prefix="/api/v1", tags=["settings"])


def _error(status_code: int, exc: Exception, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)


@app.exception_handler(InvoiceNotFoundError)
async def _not_found_handler(request: Request, exc: InvoiceNotFoundError):
    return _error(404, exc)


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return _error(409, exc)


@app.exception_handler(EscalationNotAllowedError)
async def _escalation_not_allowed_handler(request: Request, exc: EscalationNotAllowedError):
    return _error(409, exc)


@app.exception_handler(AuditInProgressError)
async def _audit_in_progress_handler(request: Request, exc: AuditInProgressError):
    return _error(409, exc)


@app.exception_handler(AuditCooldownError)
async def _audit_cooldown_handler(request: Request, exc: AuditCooldownError):
    retry_after = max(1, math.ceil(exc.remaining_seconds))
    return _error(429, exc, headers={"Retry-After": str(retry_after)})


@app.exception_handler(EscalationServiceError)
async def _escalation_failed_handler(request: Request, exc: EscalationServiceError):
    return _error(502, exc)


@app.exception_handler(DraftingServiceError)
async def _drafting_failed_handler(request: Request, exc: DraftingServiceError):
    return _error(502, exc)


@app.exception_handler(ConfigurationError)
async def _configuration_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    if settings.expose_error_details:
        return _error(503, exc)
    return JSONResponse(status_code=503, content={"detail": "Reasoning service is not configured"})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health_check():
    return {"status": "ok"}
