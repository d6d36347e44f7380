"""HTTP surface: provider webhooks, gateway redirects and admin endpoints."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from .auth import create_limiter, verify_api_key
from .config import Settings, configure_logging
from .database import DatabaseManager, ProviderType
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    PaymentsCoreError,
    ProviderAPIError,
    ValidationError,
)
from .redirect import RedirectResolver, RedirectResult
from .services import GATEWAY_PROVIDERS, PaymentsService, parse_provider

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    AuthenticationError: 400,
    ValidationError: 400,
    NotFoundError: 404,
    ProviderAPIError: 502,
}

GENERIC_ERROR = "Internal processing error"


class CredentialUpsertBody(BaseModel):
    """Provider credential form. Masked or empty secrets keep the stored value."""
    tenant_id: str = Field(..., min_length=1, description="Tenant owning the credentials")
    provider_type: str = Field(..., description="Provider wire name")
    fields: Dict[str, Optional[str]] = Field(default_factory=dict, description="Credential fields")
    is_active: bool = Field(default=False, description="Enable the provider for the tenant")
    is_sandbox: bool = Field(default=True, description="Use the provider's sandbox endpoints")


class CreatePaymentBody(BaseModel):
    """Payment request forwarded by the tenant's application."""
    tenant_id: str = Field(..., min_length=1, description="Tenant collecting the payment")
    amount: int = Field(..., gt=0, description="Amount in minor units")
    payer_name: str = Field(..., min_length=1, max_length=255)
    payer_email: Optional[str] = None
    payer_mobile: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=500)


class RotateBody(BaseModel):
    """Rotate one (tenant, provider) row, or every row when both are omitted."""
    tenant_id: Optional[str] = None
    provider_type: Optional[str] = None


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when an admin client exceeds its rate limit."""
    logger.warning(f"Rate limit exceeded for {request.client.host if request.client else 'unknown'}")
    return JSONResponse(status_code=429, content={"detail": f"Rate limit exceeded: {exc.detail}"})


def core_error_handler(request: Request, exc: PaymentsCoreError) -> JSONResponse:
    """Map the error taxonomy onto HTTP status codes."""
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": GENERIC_ERROR})
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def persistence_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures roll back and answer 500 so the provider retries."""
    logger.error(f"{request.method} {request.url.path} storage failure: {exc}")
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


def _lower_headers(request: Request) -> Dict[str, str]:
    return {k.lower(): v for k, v in request.headers.items()}


def create_app(
    settings: Settings,
    db: Optional[DatabaseManager] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the application with explicitly injected dependencies.

    Args:
        settings: Process settings.
        db: Database manager. Created from ``settings`` and owned by the app
            when omitted.
        http_client: Shared client for provider API calls.

    Returns:
        Configured FastAPI application.
    """
    owns_db = db is None
    db = db or DatabaseManager(settings.database_url)
    service = PaymentsService(db, settings, http_client=http_client)
    resolver = RedirectResolver(
        service,
        settings.app_base_url.rstrip("/") + settings.payment_result_path,
    )
    limiter = create_limiter()
    admin_limit = settings.admin_rate_limit

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.initialize()
        logger.info("Payments reconciliation core started")
        yield
        if owns_db:
            await db.shutdown()
        logger.info("Payments reconciliation core stopped")

    app = FastAPI(title="Payments Reconciliation Core", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.service = service
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(PaymentsCoreError, core_error_handler)
    app.add_exception_handler(SQLAlchemyError, persistence_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "database": db.is_initialized}

    # Provider notifications

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request):
        body = await request.body()
        try:
            result = await service.handle_stripe_webhook(body, _lower_headers(request))
        except (AuthenticationError, ValidationError) as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        except ConfigurationError as e:
            logger.error(f"Stripe webhook not configured: {e}")
            raise HTTPException(status_code=500, detail=GENERIC_ERROR)
        return {"received": True, **result.to_dict()}

    @app.post("/webhooks/{provider}/callback")
    async def gateway_callback(provider: str, request: Request):
        provider_type = parse_provider(provider)
        if provider_type not in GATEWAY_PROVIDERS:
            raise HTTPException(status_code=404, detail="Provider has no callback integration")

        body = await request.body()
        try:
            result = await service.handle_gateway_callback(
                provider_type,
                body,
                _lower_headers(request),
                dict(request.query_params),
            )
        except (AuthenticationError, ValidationError) as e:
            logger.warning(f"Rejected {provider} callback: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        return {"received": True, **result.to_dict()}

    @app.post("/payments/{provider}/create")
    @limiter.limit(admin_limit)
    async def create_payment(
        request: Request,
        provider: str,
        body: CreatePaymentBody,
        api_key: str = Depends(verify_api_key),
    ):
        payment = await service.create_payment(
            body.tenant_id,
            parse_provider(provider),
            body.amount,
            body.payer_name,
            payer_email=body.payer_email,
            payer_mobile=body.payer_mobile,
            description=body.description,
        )
        return payment.to_dict()

    @app.api_route("/payments/{provider}/redirect", methods=["GET", "POST"])
    async def gateway_redirect(provider: str, request: Request):
        params: Dict[str, Any] = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({k: v for k, v in form.items() if isinstance(v, str)})
        # A POSTed redirect must come back to the browser as a GET
        status_code = 303 if request.method == "POST" else 302

        try:
            provider_type = ProviderType(provider)
        except ValueError:
            logger.warning(f"Redirect received for unknown provider {provider!r}")
            provider_type = None

        result = RedirectResult.error()
        if provider_type is not None:
            try:
                result = await resolver.resolve(provider_type, params)
            except (PaymentsCoreError, SQLAlchemyError) as e:
                logger.error(f"{provider} redirect failed: {e}")
        return RedirectResponse(resolver.build_url(result), status_code=status_code)

    # Admin

    @app.get("/admin/payment-providers")
    @limiter.limit(admin_limit)
    async def list_payment_providers(
        request: Request,
        tenant_id: str = Query(..., min_length=1),
        api_key: str = Depends(verify_api_key),
    ):
        masked = await service.list_credentials(tenant_id)
        response: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "providers": {name: view.to_dict() for name, view in masked.items()},
        }
        for name, view in masked.items():
            response[f"has_{name}"] = view.configured and view.is_active
        return response

    @app.api_route("/admin/payment-providers", methods=["POST", "PUT"])
    @limiter.limit(admin_limit)
    async def save_payment_provider(
        request: Request,
        body: CredentialUpsertBody,
        api_key: str = Depends(verify_api_key),
    ):
        view = await service.save_credentials(
            body.tenant_id,
            body.provider_type,
            body.fields,
            is_active=body.is_active,
            is_sandbox=body.is_sandbox,
        )
        return view.to_dict()

    @app.post("/admin/payment-providers/rotate")
    @limiter.limit(admin_limit)
    async def rotate_payment_providers(
        request: Request,
        body: RotateBody,
        api_key: str = Depends(verify_api_key),
    ):
        results = await service.rotate_credentials(body.tenant_id, body.provider_type)
        return {"results": [r.to_dict() for r in results]}

    @app.get("/admin/events")
    @limiter.limit(admin_limit)
    async def list_events(
        request: Request,
        status: str = Query(..., description="ignored or failed"),
        limit: int = Query(100, ge=1, le=500),
        api_key: str = Depends(verify_api_key),
    ):
        events = await service.list_events(status, limit=limit)
        return {"status": status, "count": len(events), "events": events}

    @app.post("/admin/events/{provider}/{event_id}/replay")
    @limiter.limit(admin_limit)
    async def replay_event(
        request: Request,
        provider: str,
        event_id: str,
        api_key: str = Depends(verify_api_key),
    ):
        provider_type = parse_provider(provider)
        result = await service.replay_event(provider_type.value, event_id)
        return result.to_dict()

    @app.get("/admin/payments/status")
    @limiter.limit(admin_limit)
    async def payment_status(
        request: Request,
        tenant_id: str = Query(..., min_length=1),
        provider: str = Query(...),
        bill_id: str = Query(..., min_length=1),
        api_key: str = Depends(verify_api_key),
    ):
        status = await service.fetch_payment_status(tenant_id, parse_provider(provider), bill_id)
        return status.model_dump(mode="json")

    return app


def create_app_from_env() -> FastAPI:
    """ASGI factory: ``uvicorn payments_core.api:create_app_from_env --factory``."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_app(settings)
