# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

import os
from datetime import datetime
from functools import lru_cache
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from database import crud
from database.models import PROVIDER_COINBASE, PROVIDER_STRIPE
from database.initialize import init_database
from database.session import get_db
from svc.checkout import CheckoutSessionFactory
from svc.coinbase_commerce import CoinbaseCommerceClient
from svc.errors import PaymentServiceError
from svc.stripe_gateway import StripeGateway
from svc.subscriptions import cancel_subscription
from svc.webhooks import WebhookIngestor, verify_checkout_session
from utils.logger import setup_logger
from utils.payments import SUBSCRIPTION_TIERS
from utils.provider_config import ProviderConfig
from verifiers.signature_verifier import SignatureVerifier

load_dotenv()

logger = setup_logger()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class StripeConfigResponse(CamelModel):
    publishable_key: Optional[str]
    is_configured: bool


class CoinbaseConfigResponse(CamelModel):
    is_configured: bool


class TierResponse(CamelModel):
    key: str
    name: str
    monthly_amount_cents: int


class HealthResponse(CamelModel):
    status: str
    stripe_configured: bool
    stripe_webhook_verified: bool
    coinbase_configured: bool
    coinbase_webhook_verified: bool


class SubscriptionCheckoutRequest(CamelModel):
    user_id: Optional[str] = None
    tier: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class OrderCheckoutRequest(CamelModel):
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[Union[str, int, float]] = None
    description: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutSessionResponse(CamelModel):
    session_id: str
    url: str


class CoinbaseCheckoutResponse(CamelModel):
    charge_id: str
    url: str


class VerifySessionRequest(CamelModel):
    session_id: Optional[str] = None


class VerifySessionResponse(CamelModel):
    status: str


class PaymentRecordResponse(CamelModel):
    id: str
    user_id: str
    order_id: Optional[str]
    provider: str
    provider_session_id: Optional[str]
    provider_payment_id: Optional[str]
    amount: str
    status: str
    created_at: datetime
    updated_at: datetime


class SubscriptionRecordResponse(CamelModel):
    user_id: str
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    tier: str
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    updated_at: datetime


class SuccessResponse(CamelModel):
    success: bool


def _cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [
        "http://localhost:5000",
        "http://127.0.0.1:5000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


app = FastAPI(title="catering-payments", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    init_database()


@app.exception_handler(PaymentServiceError)
async def payment_error_handler(request: Request, exc: PaymentServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": message})


# --- dependencies ----------------------------------------------------------


def get_provider_config() -> ProviderConfig:
    return ProviderConfig.from_env()


@lru_cache(maxsize=4)
def _stripe_gateway_for(api_key: str, timeout: float) -> StripeGateway:
    return StripeGateway(api_key, timeout=timeout)


def get_stripe_gateway(config: ProviderConfig = Depends(get_provider_config)) -> Optional[StripeGateway]:
    if not config.stripe_enabled:
        return None
    return _stripe_gateway_for(config.stripe_secret_key, config.provider_timeout_seconds)


def get_coinbase_client(config: ProviderConfig = Depends(get_provider_config)) -> Optional[CoinbaseCommerceClient]:
    if not config.coinbase_enabled:
        return None
    return CoinbaseCommerceClient(config.coinbase_api_key, timeout=config.provider_timeout_seconds)


def get_checkout_factory(
    db: Session = Depends(get_db),
    config: ProviderConfig = Depends(get_provider_config),
    stripe_gateway: Optional[StripeGateway] = Depends(get_stripe_gateway),
    coinbase_client: Optional[CoinbaseCommerceClient] = Depends(get_coinbase_client),
) -> CheckoutSessionFactory:
    return CheckoutSessionFactory(db, config, stripe_gateway=stripe_gateway, coinbase_client=coinbase_client)


def get_webhook_ingestor(
    db: Session = Depends(get_db),
    config: ProviderConfig = Depends(get_provider_config),
) -> WebhookIngestor:
    return WebhookIngestor(db, SignatureVerifier(config))


# --- routes ----------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse)
async def health_check(config: ProviderConfig = Depends(get_provider_config)) -> HealthResponse:
    """Health check endpoint that reports which providers are usable."""
    return HealthResponse(
        status="ok",
        stripe_configured=config.stripe_enabled,
        stripe_webhook_verified=config.stripe_webhook_verified,
        coinbase_configured=config.coinbase_enabled,
        coinbase_webhook_verified=config.coinbase_webhook_verified,
    )


@app.get("/api/config/stripe", response_model=StripeConfigResponse)
async def stripe_config(config: ProviderConfig = Depends(get_provider_config)) -> StripeConfigResponse:
    return StripeConfigResponse(publishable_key=config.stripe_publishable_key, is_configured=config.stripe_enabled)


@app.get("/api/config/coinbase", response_model=CoinbaseConfigResponse)
async def coinbase_config(config: ProviderConfig = Depends(get_provider_config)) -> CoinbaseConfigResponse:
    return CoinbaseConfigResponse(is_configured=config.coinbase_enabled)


@app.get("/api/config/tiers", response_model=List[TierResponse])
async def list_tiers() -> List[TierResponse]:
    tiers = sorted(SUBSCRIPTION_TIERS.values(), key=lambda tier: tier.monthly_amount_cents)
    return [
        TierResponse(key=tier.key, name=tier.name, monthly_amount_cents=tier.monthly_amount_cents) for tier in tiers
    ]


@app.post("/api/payments/create-subscription-checkout", response_model=CheckoutSessionResponse)
def create_subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    factory: CheckoutSessionFactory = Depends(get_checkout_factory),
) -> CheckoutSessionResponse:
    result = factory.create_subscription_checkout(
        user_id=payload.user_id,
        tier=payload.tier,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return CheckoutSessionResponse(session_id=result.session_id, url=result.url)


@app.post("/api/payments/create-order-checkout", response_model=CheckoutSessionResponse)
def create_order_checkout(
    payload: OrderCheckoutRequest,
    factory: CheckoutSessionFactory = Depends(get_checkout_factory),
) -> CheckoutSessionResponse:
    result = factory.create_order_checkout(
        user_id=payload.user_id,
        amount=payload.amount,
        order_id=payload.order_id,
        description=payload.description,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return CheckoutSessionResponse(session_id=result.session_id, url=result.url)


@app.post("/api/payments/create-coinbase-checkout", response_model=CoinbaseCheckoutResponse)
def create_coinbase_checkout(
    payload: OrderCheckoutRequest,
    factory: CheckoutSessionFactory = Depends(get_checkout_factory),
) -> CoinbaseCheckoutResponse:
    result = factory.create_coinbase_checkout(
        user_id=payload.user_id,
        amount=payload.amount,
        order_id=payload.order_id,
        description=payload.description,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return CoinbaseCheckoutResponse(charge_id=result.session_id, url=result.url)


@app.post("/api/payments/verify-session", response_model=VerifySessionResponse)
def verify_payment_session(
    payload: VerifySessionRequest,
    db: Session = Depends(get_db),
    stripe_gateway: Optional[StripeGateway] = Depends(get_stripe_gateway),
) -> VerifySessionResponse:
    """
    Fallback endpoint to reconcile a checkout session straight from Stripe.
    Used when webhooks have not been delivered yet.
    """
    outcome = verify_checkout_session(db, stripe_gateway, payload.session_id)
    logger.info("Manual verification of session %s: %s", payload.session_id, outcome)
    return VerifySessionResponse(status=outcome)


async def _ingest(provider: str, request: Request, ingestor: WebhookIngestor) -> JSONResponse:
    payload = await request.body()
    # Verification and the store are synchronous; keep them off the event loop.
    result = await run_in_threadpool(ingestor.ingest, provider, payload, request.headers)
    if result.retryable:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"received": False, "retry": True})
    return JSONResponse(status_code=status.HTTP_200_OK, content={"received": True})


@app.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_webhook_ingestor)) -> JSONResponse:
    return await _ingest(PROVIDER_STRIPE, request, ingestor)


@app.post("/api/webhooks/coinbase")
async def coinbase_webhook(
    request: Request, ingestor: WebhookIngestor = Depends(get_webhook_ingestor)
) -> JSONResponse:
    return await _ingest(PROVIDER_COINBASE, request, ingestor)


@app.get("/api/subscriptions/{user_id}", response_model=Optional[SubscriptionRecordResponse])
def get_subscription(user_id: str, db: Session = Depends(get_db)) -> Optional[Any]:
    subscription = crud.get_subscription(db, user_id)
    if subscription is None:
        return None
    return SubscriptionRecordResponse.model_validate(subscription)


@app.post("/api/subscriptions/{user_id}/cancel", response_model=SuccessResponse)
def cancel_user_subscription(
    user_id: str,
    db: Session = Depends(get_db),
    stripe_gateway: Optional[StripeGateway] = Depends(get_stripe_gateway),
) -> SuccessResponse:
    cancel_subscription(db, stripe_gateway, user_id)
    return SuccessResponse(success=True)


@app.get("/api/payments/{user_id}", response_model=List[PaymentRecordResponse])
def list_user_payments(user_id: str, db: Session = Depends(get_db)) -> List[PaymentRecordResponse]:
    return [PaymentRecordResponse.model_validate(payment) for payment in crud.list_payments(db, user_id)]
