"""
Accrual Ledger - HTTP Adapter

Thin FastAPI layer over AccrualLedger. Authentication happens upstream: the
gateway presents the service API key and the verified caller identity in
`X-Caller-Id`. Ledger failures map to HTTP status by category.

Endpoints:
- POST   /providers                     - RegisterProvider
- DELETE /providers/{id}                - RemoveProvider
- POST   /providers/{id}/withdraw       - WithdrawProviderEarnings
- PUT    /providers/{id}/fee            - UpdateProviderFee
- POST   /providers/status              - SetProvidersActive
- GET    /providers/{id}                - GetProviderState
- GET    /providers/{id}/earnings       - GetProviderEarnings
- POST   /subscribers                   - RegisterSubscriber
- POST   /subscribers/{id}/pause        - PauseSubscription
- POST   /subscribers/{id}/deposit      - DepositToSubscription
- GET    /subscribers/{id}              - GetSubscriberState
- GET    /subscribers/{id}/balance      - GetSubscriberLiveBalance
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import os
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from accrual.config import LedgerConfig
from accrual.errors import (
    AuthorizationError,
    CapacityError,
    LedgerError,
    NotFoundError,
    StateConflictError,
    TransferFailed,
    ValidationError,
)
from accrual.ledger import AccrualLedger
from accrual.providers import Provider
from accrual.subscribers import Subscriber, SubscriptionPlan
from custody.transfer import InMemoryTreasury

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class RegisterProviderRequest(BaseModel):
    """Request to register a provider."""
    registration_key: str = Field(..., min_length=1, description="One-time registration key")
    fee: int = Field(..., ge=0, description="Units per subscriber per billing period")


class UpdateFeeRequest(BaseModel):
    fee: int = Field(..., ge=0)


class SetProvidersActiveRequest(BaseModel):
    provider_ids: List[int] = Field(..., min_length=1)
    active: bool


class RegisterSubscriberRequest(BaseModel):
    """Request to register a subscriber against a provider list."""
    deposit: int = Field(..., ge=0)
    plan: str = Field(default="BASIC", description="BASIC, PREMIUM or VIP")
    provider_ids: List[int]


class DepositRequest(BaseModel):
    amount: int = Field(..., ge=0)


class ProviderResponse(BaseModel):
    provider_id: int
    owner: str
    fee: int
    subscriber_count: int
    last_settled: int
    balance: int
    active: bool
    pending_earnings: int


class SubscriberResponse(BaseModel):
    subscriber_id: int
    owner: str
    plan: str
    created_date: int
    paused_date: int
    is_paused: bool
    balance: int
    provider_ids: List[int]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    providers: int
    subscribers: int
    uptime_seconds: float


# ============================================================================
# Error Mapping
# ============================================================================

def status_for(error: LedgerError) -> int:
    """HTTP status for a ledger failure category."""
    if isinstance(error, AuthorizationError):
        return 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (StateConflictError, CapacityError)):
        return 409
    if isinstance(error, TransferFailed):
        return 502
    return 500


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = status_for(exc)
    logger.info("ledger_request_failed", path=request.url.path, error=exc.code, status=status)
    return JSONResponse(status_code=status, content=exc.to_dict())


# ============================================================================
# Dependencies
# ============================================================================

def get_ledger(request: Request) -> AccrualLedger:
    """Get the application's ledger."""
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return ledger


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def caller_identity(x_caller_id: str = Header(..., alias="X-Caller-Id")) -> str:
    """Verified caller identity forwarded by the gateway."""
    if not x_caller_id.strip():
        raise HTTPException(status_code=400, detail="Empty caller identity")
    return x_caller_id


def _provider_response(ledger: AccrualLedger, provider: Provider) -> ProviderResponse:
    return ProviderResponse(
        **provider.to_dict(),
        active=ledger.is_provider_active(provider.provider_id),
        pending_earnings=ledger.get_provider_earnings(provider.provider_id),
    )


def _subscriber_response(subscriber: Subscriber) -> SubscriberResponse:
    return SubscriberResponse(**subscriber.to_dict())


# ============================================================================
# Routes
# ============================================================================

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("/providers", status_code=201, tags=["Providers"])
def register_provider(
    request: RegisterProviderRequest,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    provider_id = ledger.register_provider(caller, request.registration_key, request.fee)
    return {"provider_id": provider_id}


@router.post("/providers/status", tags=["Providers"])
def set_providers_active(
    request: SetProvidersActiveRequest,
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    ledger.set_providers_active(request.provider_ids, request.active)
    return {"provider_ids": request.provider_ids, "active": request.active}


@router.delete("/providers/{provider_id}", tags=["Providers"])
def remove_provider(
    provider_id: int,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    payout = ledger.remove_provider(provider_id, caller)
    return {"provider_id": provider_id, "payout": payout}


@router.post("/providers/{provider_id}/withdraw", tags=["Providers"])
def withdraw_provider_earnings(
    provider_id: int,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    amount = ledger.withdraw_provider_earnings(provider_id, caller)
    return {"provider_id": provider_id, "amount": amount}


@router.put("/providers/{provider_id}/fee", tags=["Providers"])
def update_provider_fee(
    provider_id: int,
    request: UpdateFeeRequest,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    ledger.update_provider_fee(provider_id, caller, request.fee)
    return {"provider_id": provider_id, "fee": request.fee}


@router.get("/providers/{provider_id}", response_model=ProviderResponse, tags=["Providers"])
def get_provider_state(provider_id: int, ledger: AccrualLedger = Depends(get_ledger)):
    return _provider_response(ledger, ledger.get_provider_state(provider_id))


@router.get("/providers/{provider_id}/earnings", tags=["Providers"])
def get_provider_earnings(provider_id: int, ledger: AccrualLedger = Depends(get_ledger)) -> Dict[str, Any]:
    return {
        "provider_id": provider_id,
        "earnings_since_last_settlement": ledger.get_provider_earnings(provider_id),
        "live_balance": ledger.get_provider_live_balance(provider_id),
    }


@router.post("/subscribers", status_code=201, tags=["Subscribers"])
def register_subscriber(
    request: RegisterSubscriberRequest,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    try:
        plan = SubscriptionPlan.parse(request.plan)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid plan: {request.plan}")

    subscriber_id = ledger.register_subscriber(caller, request.deposit, plan, request.provider_ids)
    return {"subscriber_id": subscriber_id}


@router.post("/subscribers/{subscriber_id}/pause", tags=["Subscribers"])
def pause_subscription(
    subscriber_id: int,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    ledger.pause_subscription(subscriber_id, caller)
    return {"subscriber_id": subscriber_id, "paused": True}


@router.post("/subscribers/{subscriber_id}/deposit", tags=["Subscribers"])
def deposit_to_subscription(
    subscriber_id: int,
    request: DepositRequest,
    caller: str = Depends(caller_identity),
    ledger: AccrualLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    ledger.deposit_to_subscription(subscriber_id, caller, request.amount)
    return {"subscriber_id": subscriber_id, "balance": ledger.get_subscriber_state(subscriber_id).balance}


@router.get("/subscribers/{subscriber_id}", response_model=SubscriberResponse, tags=["Subscribers"])
def get_subscriber_state(subscriber_id: int, ledger: AccrualLedger = Depends(get_ledger)):
    return _subscriber_response(ledger.get_subscriber_state(subscriber_id))


@router.get("/subscribers/{subscriber_id}/balance", tags=["Subscribers"])
def get_subscriber_live_balance(subscriber_id: int, ledger: AccrualLedger = Depends(get_ledger)) -> Dict[str, Any]:
    return {
        "subscriber_id": subscriber_id,
        "live_balance": ledger.get_subscriber_live_balance(subscriber_id),
    }


# ============================================================================
# Application Factory
# ============================================================================

def build_ledger_from_env() -> AccrualLedger:
    """Ledger wired from LEDGER_* settings and an optional DATABASE_URL."""
    from persistence.store import LedgerStore

    config = LedgerConfig.from_env()
    database_url = os.environ.get("DATABASE_URL")
    store = LedgerStore.from_url(database_url) if database_url else None
    return AccrualLedger(
        config=config,
        transfer=InMemoryTreasury(unlimited_wallets=True),
        store=store,
    )


def create_app(ledger: Optional[AccrualLedger] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("accrual_ledger_starting", version=VERSION)
        if getattr(application.state, "ledger", None) is None:
            application.state.ledger = build_ledger_from_env()
        application.state.start_time = datetime.now(timezone.utc)
        yield
        logger.info("accrual_ledger_stopping")

    application = FastAPI(
        title="Accrual Ledger",
        description="Multi-tenant accrual billing ledger: providers, subscribers, settlement.",
        version=VERSION,
        lifespan=lifespan,
    )
    application.state.ledger = ledger
    application.state.start_time = datetime.now(timezone.utc)
    application.add_exception_handler(LedgerError, ledger_error_handler)

    @application.get("/health", response_model=HealthResponse, tags=["System"])
    def health_check(request: Request):
        """Health check endpoint."""
        current = get_ledger(request)
        uptime = (datetime.now(timezone.utc) - request.app.state.start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            providers=len(current.providers),
            subscribers=len(current.subscribers),
            uptime_seconds=uptime,
        )

    application.include_router(router)

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
