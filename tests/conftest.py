"""
Pytest configuration and fixtures.
"""

import os

# Settings are read once at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./earnkit_test.db")
os.environ["TOPUP_CONFIRMATION_DELAY_SECONDS"] = "0"
os.environ["RATE_LIMIT_GLOBAL"] = "10000/minute"
os.environ.pop("REDIS_URL", None)

import time
from decimal import Decimal
from typing import Any, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from earnkit.config import settings
from earnkit.db import database
from earnkit.db.database import close_db, create_tables, get_session, init_db
from earnkit.db.models import Agent, Developer, FeeModelType
from earnkit.services.fee import dump_fee_model_config, validate_fee_model_config
from earnkit.services.topup import credit_balance, topup_reconciler

from tests._testkit import DEV_PRIVY_ID, DEV_WALLET, PRIVY_APP_ID


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database per test."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'earnkit_test.db'}")
    await create_tables()
    yield
    await topup_reconciler.drain()
    await close_db()


@pytest.fixture
async def developer(db) -> Developer:
    """Signed-up developer whose wallet receives top-ups."""
    return await database.get_or_create_developer(DEV_PRIVY_ID, DEV_WALLET)


@pytest.fixture
def make_agent(developer):
    """Factory for agents owned by the test developer."""

    async def _make(
        fee_model_type: FeeModelType,
        config: dict[str, Any],
        name: str = "Test Agent",
        developer_id: Optional[str] = None,
    ) -> Agent:
        validated = validate_fee_model_config(fee_model_type, config)
        return await database.create_agent(
            developer_id=developer_id or developer.id,
            name=name,
            fee_model_type=fee_model_type,
            fee_model_config=dump_fee_model_config(validated),
        )

    return _make


@pytest.fixture
async def free_tier_agent(make_agent) -> Agent:
    """Two free uses, then 0.125 ETH per use."""
    return await make_agent(FeeModelType.FREE_TIER, {"threshold": 2, "rate": "0.125"})


@pytest.fixture
async def credit_agent(make_agent) -> Agent:
    """10 credits per prompt, two purchasable tiers."""
    return await make_agent(
        FeeModelType.CREDIT_BASED,
        {
            "creditsPerPrompt": 10,
            "topUpOptions": [
                {"creditAmount": 100, "pricePerCredit": "0.0001"},
                {"creditAmount": 1000, "pricePerCredit": "0.00008"},
            ],
        },
    )


@pytest.fixture
def fund():
    """Add ETH or credits to a user's balance."""

    async def _fund(agent_id: str, wallet: str, eth: str = "0", credits: int = 0) -> None:
        async with get_session() as session:
            await credit_balance(session, agent_id, wallet, eth_amount=Decimal(eth), credits=credits)

    return _fund


@pytest.fixture
async def client(db):
    """HTTP client bound to the API app."""
    from earnkit.api import create_api_app

    transport = httpx.ASGITransport(app=create_api_app(), raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture(scope="session")
def privy_keys():
    """ES256 key pair standing in for Privy's signing key."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    public_pem = private_key.public_key().public_bytes(
        Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return private_key, public_pem


@pytest.fixture
def privy_config(monkeypatch, privy_keys):
    """Configure the identity verifier with the test key."""
    _, public_pem = privy_keys
    monkeypatch.setattr(settings, "privy_app_id", PRIVY_APP_ID)
    monkeypatch.setattr(settings, "privy_verification_key", public_pem)


@pytest.fixture
def make_token(privy_keys):
    """Factory for signed access tokens."""
    private_key, _ = privy_keys

    def _make(
        privy_id: str = DEV_PRIVY_ID,
        app_id: str = PRIVY_APP_ID,
        issuer: str = "privy.io",
        expires_in: int = 3600,
        key=None,
    ) -> str:
        now = int(time.time())
        payload = {
            "sub": privy_id,
            "aud": app_id,
            "iss": issuer,
            "sid": "session-1",
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, key or private_key, algorithm="ES256")

    return _make


@pytest.fixture
def auth_headers(privy_config, make_token) -> dict[str, str]:
    """Bearer header for the test developer."""
    return {"Authorization": f"Bearer {make_token()}"}
