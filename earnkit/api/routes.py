"""
FastAPI routes for EarnKit.
Ledger endpoints called by the SDK, plus the developer dashboard API.
"""

import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from ..config import get_settings
from ..db import database
from ..db.models import Agent, Developer, FeeModelType, UsageEvent
from ..services import ledger
from ..services.errors import AgentNotFound, LedgerError
from ..services.fee import (
    MAX_CREDITS,
    dump_fee_model_config,
    fits_eth_column,
    format_eth,
    validate_fee_model_config,
)
from ..services.topup import get_top_up_details, topup_reconciler
from ..utils.logging import get_logger, setup_logging
from .auth import get_current_developer, get_verified_privy_id
from .rate_limit import limiter, rate_limit_handler

router = APIRouter(prefix="/api", tags=["EarnKit API"])
settings = get_settings()

WALLET_PATTERN = r"^0x[0-9a-fA-F]{40}$"
TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


# ===================
# Pydantic Models
# ===================

class CamelModel(BaseModel):
    """Request body with camelCase JSON keys."""
    model_config = ConfigDict(populate_by_name=True)


class WalletModel(CamelModel):
    """Request body carrying an end-user or developer wallet address."""
    wallet_address: str = Field(pattern=WALLET_PATTERN, alias="walletAddress")

    @field_validator("wallet_address")
    @classmethod
    def normalize_wallet(cls, v: str) -> str:
        """Addresses are compared case-insensitively."""
        return v.lower()


class TrackRequest(WalletModel):
    """Track request body."""
    agent_id: str = Field(min_length=1, alias="agentId")
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=255, alias="idempotencyKey")
    credits_to_deduct: Optional[int] = Field(default=None, gt=0, le=MAX_CREDITS, alias="creditsToDeduct")


class EventRequest(CamelModel):
    """Capture / release request body."""
    event_id: str = Field(min_length=1, alias="eventId")


class SubmitTopUpRequest(WalletModel):
    """Top-up submission body."""
    tx_hash: str = Field(pattern=TX_HASH_PATTERN, alias="txHash")
    agent_id: str = Field(min_length=1, alias="agentId")
    amount_in_eth: str = Field(min_length=1, max_length=78, alias="amountInEth")
    credits_to_top_up: Optional[int] = Field(default=None, gt=0, le=MAX_CREDITS, alias="creditsToTopUp")

    @field_validator("tx_hash")
    @classmethod
    def normalize_hash(cls, v: str) -> str:
        return v.lower()

    @field_validator("amount_in_eth")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        """Ensure the amount is a positive decimal string."""
        try:
            amount = Decimal(v)
        except InvalidOperation:
            raise ValueError("amountInEth must be a decimal string")
        if not amount.is_finite() or amount <= 0:
            raise ValueError("amountInEth must be positive")
        if not fits_eth_column(amount):
            raise ValueError("amountInEth has more precision than an ETH amount allows")
        return v


class SignUpRequest(WalletModel):
    """Developer sign-up body."""


class AgentRequest(CamelModel):
    """Agent create / update body. The config must match the fee model."""
    name: str = Field(min_length=1, max_length=255)
    fee_model_type: FeeModelType = Field(alias="feeModelType")
    fee_model_config: dict[str, Any] = Field(alias="feeModelConfig")

    @model_validator(mode="after")
    def validate_config_shape(self) -> "AgentRequest":
        config = validate_fee_model_config(self.fee_model_type, self.fee_model_config)
        self.fee_model_config = dump_fee_model_config(config)
        return self


class BalanceResponse(BaseModel):
    """User balance for one agent."""
    eth: str
    credits: str


class DeveloperResponse(BaseModel):
    """Developer account."""
    id: str
    privyId: str
    walletAddress: str
    createdAt: Optional[datetime] = None


class AgentResponse(BaseModel):
    """Agent configuration."""
    id: str
    name: str
    feeModelType: str
    feeModelConfig: dict[str, Any]
    developerId: str
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class UsageEventResponse(BaseModel):
    """Usage event log entry."""
    id: str
    status: str
    feeDeducted: Optional[str] = None
    creditsDeducted: Optional[str] = None
    idempotencyKey: Optional[str] = None
    userWalletAddress: str
    agentId: str
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


def _developer_response(developer: Developer) -> DeveloperResponse:
    return DeveloperResponse(
        id=developer.id,
        privyId=developer.privy_id,
        walletAddress=developer.wallet_address,
        createdAt=developer.created_at,
    )


def _agent_response(agent: Agent) -> AgentResponse:
    return AgentResponse(
        id=agent.id,
        name=agent.name,
        feeModelType=agent.fee_model_type.value,
        feeModelConfig=agent.fee_model_config,
        developerId=agent.developer_id,
        createdAt=agent.created_at,
        updatedAt=agent.updated_at,
    )


def _event_response(event: UsageEvent) -> UsageEventResponse:
    return UsageEventResponse(
        id=event.id,
        status=event.status.value,
        feeDeducted=format_eth(event.fee_deducted) if event.fee_deducted is not None else None,
        creditsDeducted=str(event.credits_deducted) if event.credits_deducted is not None else None,
        idempotencyKey=event.idempotency_key,
        userWalletAddress=event.user_wallet_address,
        agentId=event.agent_id,
        createdAt=event.created_at,
        updatedAt=event.updated_at,
    )


# ===================
# Usage Ledger
# ===================

@router.post("/track")
async def track_usage(body: TrackRequest) -> dict:
    """Hold the fee for one use; returns the PENDING event ID."""
    event_id = await ledger.track(
        agent_id=body.agent_id,
        wallet_address=body.wallet_address,
        idempotency_key=body.idempotency_key,
        credits_to_deduct=body.credits_to_deduct,
    )
    return {"eventId": event_id}


@router.post("/capture")
async def capture_usage(body: EventRequest) -> dict:
    """Finalize a held charge after the AI call succeeded."""
    event_id = await ledger.capture(body.event_id)
    return {"success": True, "eventId": event_id}


@router.post("/release")
async def release_usage(body: EventRequest) -> dict:
    """Refund a held charge after the AI call failed."""
    event_id = await ledger.release(body.event_id)
    return {"success": True, "eventId": event_id}


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    agent_id: str = Query(..., min_length=1, alias="agentId"),
    wallet_address: str = Query(..., pattern=WALLET_PATTERN, alias="walletAddress"),
) -> BalanceResponse:
    """Get a user's balance; zero when the user never topped up."""
    eth, credits = await ledger.get_balance(agent_id, wallet_address.lower())
    return BalanceResponse(eth=format_eth(eth), credits=str(credits))


# ===================
# Top-Ups
# ===================

@router.get("/top-up-details")
async def top_up_details(
    agent_id: str = Query(..., min_length=1, alias="agentId"),
) -> dict:
    """Get purchase options for an agent."""
    options = await get_top_up_details(agent_id)
    return {"options": options}


@router.post("/top-up-details", status_code=202)
async def submit_top_up(body: SubmitTopUpRequest) -> dict:
    """Submit an on-chain deposit for confirmation."""
    status = await topup_reconciler.submit(
        tx_hash=body.tx_hash,
        wallet_address=body.wallet_address,
        agent_id=body.agent_id,
        amount_in_eth=body.amount_in_eth,
        credits_to_top_up=body.credits_to_top_up,
    )
    return {"status": status, "message": "Top-up transaction is being monitored."}


# ===================
# Developer Dashboard
# ===================

@router.post("/auth", response_model=DeveloperResponse)
async def sign_up(
    body: SignUpRequest,
    privy_id: str = Depends(get_verified_privy_id),
) -> DeveloperResponse:
    """Sign up the verified developer, or return the existing account."""
    developer = await database.get_or_create_developer(privy_id, body.wallet_address)
    return _developer_response(developer)


@router.get("/agents", response_model=list[AgentResponse])
async def list_agents(
    developer: Developer = Depends(get_current_developer),
) -> list[AgentResponse]:
    """Get all agents of the developer."""
    agents = await database.get_developer_agents(developer.id)
    return [_agent_response(a) for a in agents]


@router.post("/agents", response_model=AgentResponse, status_code=201)
async def create_agent(
    body: AgentRequest,
    developer: Developer = Depends(get_current_developer),
) -> AgentResponse:
    """Create an agent with a validated fee model."""
    agent = await database.create_agent(
        developer_id=developer.id,
        name=body.name,
        fee_model_type=body.fee_model_type,
        fee_model_config=body.fee_model_config,
    )
    return _agent_response(agent)


async def _owned_agent(agent_id: str, developer: Developer) -> Agent:
    agent = await database.get_developer_agent(developer.id, agent_id)
    if agent is None:
        raise AgentNotFound()
    return agent


@router.put("/agents/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: str,
    body: AgentRequest,
    developer: Developer = Depends(get_current_developer),
) -> AgentResponse:
    """Update an agent's name and fee model."""
    await _owned_agent(agent_id, developer)
    agent = await database.update_agent(
        agent_id,
        name=body.name,
        fee_model_type=body.fee_model_type,
        fee_model_config=body.fee_model_config,
    )
    if agent is None:
        raise AgentNotFound()
    return _agent_response(agent)


@router.delete("/agents/{agent_id}", response_model=AgentResponse)
async def delete_agent(
    agent_id: str,
    developer: Developer = Depends(get_current_developer),
) -> AgentResponse:
    """Delete an agent with its balances and usage events."""
    agent = await _owned_agent(agent_id, developer)
    if not await database.delete_agent(agent_id):
        raise AgentNotFound()
    return _agent_response(agent)


@router.get("/agents/{agent_id}/logs", response_model=list[UsageEventResponse])
async def agent_logs(
    agent_id: str,
    developer: Developer = Depends(get_current_developer),
) -> list[UsageEventResponse]:
    """Get an agent's usage events, newest first."""
    await _owned_agent(agent_id, developer)
    events = await database.get_agent_usage_events(agent_id)
    return [_event_response(e) for e in events]


# ===================
# App Factory
# ===================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup; finish pending top-ups on shutdown."""
    await database.init_db()
    yield
    await topup_reconciler.drain()
    await database.close_db()


def create_api_app() -> FastAPI:
    """Create the FastAPI application."""
    setup_logging(settings.log_level)
    _log = get_logger("api")

    app = FastAPI(
        title="EarnKit API",
        description="Per-use billing for AI agents",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # SDK calls come from browser agents
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        _log.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        _log.info(
            "ledger_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            status=exc.status_code,
        )
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "message": "Invalid request body",
                "errors": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={"message": "Internal Server Error"},
        )

    app.include_router(router)

    @app.get("/health")
    @limiter.exempt
    async def health_check():
        return {"status": "ok"}

    return app
