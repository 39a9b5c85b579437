"""
Fee policy for monetized agents.

Fee Models:
- FREE_TIER: the first `threshold` captured uses are free, every later use
  costs `rate` ETH
- CREDIT_BASED: every use costs `creditsPerPrompt` credits (or a per-call
  override), credits are bought through top-up tiers

The evaluator is pure: callers fetch the agent config and the user's
captured-usage count and pass them in.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from web3 import Web3

from earnkit.db.models import FeeModelType
from earnkit.services.errors import FeeModelConfigError

# Precision used when quoting top-up prices
ETH_QUOTE_PLACES = Decimal("0.000001")

# Storage limits: ETH columns are NUMERIC(38, 18), credit columns are BIGINT
ETH_DECIMAL_PLACES = 18
ETH_MAX_DIGITS = 38
MAX_ETH = Decimal(10) ** (ETH_MAX_DIGITS - ETH_DECIMAL_PLACES)
MAX_CREDITS = 2**63 - 1


# ===================
# Fee Model Configs
# ===================

class FreeTierConfig(BaseModel):
    """Free uses up to a threshold, then a fixed ETH rate per use."""
    model_config = ConfigDict(extra="forbid")

    threshold: int = Field(ge=0, le=MAX_CREDITS)
    rate: Decimal = Field(
        gt=0, lt=MAX_ETH, max_digits=ETH_MAX_DIGITS, decimal_places=ETH_DECIMAL_PLACES
    )


class TopUpTier(BaseModel):
    """A purchasable credit bundle."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    credit_amount: int = Field(gt=0, le=MAX_CREDITS, alias="creditAmount")
    price_per_credit: Decimal = Field(
        gt=0,
        lt=MAX_ETH,
        max_digits=ETH_MAX_DIGITS,
        decimal_places=ETH_DECIMAL_PLACES,
        alias="pricePerCredit",
    )


class CreditBasedConfig(BaseModel):
    """Fixed credit cost per use, replenished via top-up tiers."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    credits_per_prompt: int = Field(gt=0, le=MAX_CREDITS, alias="creditsPerPrompt")
    top_up_options: list[TopUpTier] = Field(default_factory=list, alias="topUpOptions")


FeeModelConfig = Union[FreeTierConfig, CreditBasedConfig]

_CONFIG_TYPES: dict[FeeModelType, type[BaseModel]] = {
    FeeModelType.FREE_TIER: FreeTierConfig,
    FeeModelType.CREDIT_BASED: CreditBasedConfig,
}


def validate_fee_model_config(fee_model_type: FeeModelType, raw: Any) -> FeeModelConfig:
    """
    Validate a fee model config against its declared type.

    Raises:
        pydantic.ValidationError: If the shape does not match the type
    """
    return _CONFIG_TYPES[fee_model_type].model_validate(raw)


def dump_fee_model_config(config: FeeModelConfig) -> dict[str, Any]:
    """Serialize a config for storage (decimals become strings)."""
    return config.model_dump(mode="json", by_alias=True)


def parse_fee_model_config(fee_model_type: FeeModelType, raw: Any) -> FeeModelConfig:
    """Load a stored config; a mismatch here is a configuration fault."""
    try:
        return validate_fee_model_config(fee_model_type, raw)
    except ValidationError as e:
        raise FeeModelConfigError(
            f"Stored fee model config does not match {fee_model_type.value}: {e}"
        ) from e


def fits_eth_column(amount: Decimal) -> bool:
    """True if the amount is stored in an ETH column without rounding."""
    _, digits, exponent = amount.as_tuple()
    # Trailing fractional zeros are not stored
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits = digits[:-1]
        exponent += 1
    places = max(-exponent, 0)
    integer_digits = max(len(digits) - places, 0) + max(exponent, 0)
    return (
        places <= ETH_DECIMAL_PLACES
        and integer_digits <= ETH_MAX_DIGITS - ETH_DECIMAL_PLACES
    )


# ===================
# Charge Decisions
# ===================

class ChargeKind(str, Enum):
    """What a single use costs."""
    FREE = "free"
    ETH = "eth"
    CREDITS = "credits"


@dataclass(frozen=True)
class ChargeDecision:
    """Amount to hold from the user's balance for one use."""
    kind: ChargeKind
    eth_amount: Optional[Decimal] = None
    credit_amount: Optional[int] = None

    @classmethod
    def free(cls) -> "ChargeDecision":
        return cls(kind=ChargeKind.FREE)

    @classmethod
    def eth(cls, amount: Decimal) -> "ChargeDecision":
        return cls(kind=ChargeKind.ETH, eth_amount=amount)

    @classmethod
    def credits(cls, amount: int) -> "ChargeDecision":
        return cls(kind=ChargeKind.CREDITS, credit_amount=amount)


def evaluate(
    fee_model_type: FeeModelType,
    fee_model_config: FeeModelConfig,
    prior_captured_count: int,
    requested_credits: Optional[int] = None,
) -> ChargeDecision:
    """
    Decide what one use costs.

    Args:
        fee_model_type: The agent's declared fee model
        fee_model_config: Parsed config for that model
        prior_captured_count: The user's CAPTURED events for this agent
        requested_credits: Per-call credit override (credit model only)

    Returns:
        ChargeDecision

    Raises:
        FeeModelConfigError: If the config does not belong to the type
    """
    if fee_model_type == FeeModelType.FREE_TIER and isinstance(fee_model_config, FreeTierConfig):
        if prior_captured_count < fee_model_config.threshold:
            return ChargeDecision.free()
        return ChargeDecision.eth(fee_model_config.rate)

    if fee_model_type == FeeModelType.CREDIT_BASED and isinstance(fee_model_config, CreditBasedConfig):
        amount = requested_credits if requested_credits is not None else fee_model_config.credits_per_prompt
        return ChargeDecision.credits(amount)

    raise FeeModelConfigError(
        f"Config {type(fee_model_config).__name__} does not belong to {fee_model_type}"
    )


# ===================
# Top-Up Options
# ===================

def quote_eth(amount: Decimal) -> str:
    """Fix an ETH amount to 6 decimal places."""
    return str(amount.quantize(ETH_QUOTE_PLACES, rounding=ROUND_HALF_UP))


def eth_to_wei(amount_in_eth: str) -> str:
    """Convert an ETH decimal string to a wei integer string."""
    return str(Web3.to_wei(Decimal(amount_in_eth), "ether"))


def format_eth(amount: Optional[Decimal]) -> str:
    """Render an ETH balance without exponent or trailing zeros."""
    if amount is None or amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def build_top_up_options(
    fee_model_type: FeeModelType,
    fee_model_config: FeeModelConfig,
    deposit_address: str,
    free_tier_amounts: list[str],
) -> list[dict[str, Any]]:
    """
    Synthesize purchase options for an agent.

    Credit agents get one option per configured tier, priced at
    creditAmount x pricePerCredit. Free-tier agents get fixed ETH amounts.
    """
    options: list[dict[str, Any]] = []

    if isinstance(fee_model_config, CreditBasedConfig) and fee_model_type == FeeModelType.CREDIT_BASED:
        for tier in fee_model_config.top_up_options:
            amount_in_eth = quote_eth(Decimal(tier.credit_amount) * tier.price_per_credit)
            options.append({
                "label": f"{tier.credit_amount:,} Credits",
                "amountInEth": amount_in_eth,
                "to": deposit_address,
                "value": eth_to_wei(amount_in_eth),
                "creditsToTopUp": tier.credit_amount,
            })
    elif isinstance(fee_model_config, FreeTierConfig) and fee_model_type == FeeModelType.FREE_TIER:
        for amount in free_tier_amounts:
            options.append({
                "label": f"{amount} ETH",
                "amountInEth": amount,
                "to": deposit_address,
                "value": eth_to_wei(amount),
            })
    else:
        raise FeeModelConfigError(
            f"Config {type(fee_model_config).__name__} does not belong to {fee_model_type}"
        )

    return options
