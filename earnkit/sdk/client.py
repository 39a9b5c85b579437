"""
EarnKit client for agent code.

Wraps the ledger endpoints so an agent can bill per use:

    async with EarnKit(agent_id="...") as earnkit:
        event_id = await earnkit.track(wallet_address=user_wallet)
        try:
            result = await run_agent(prompt)
        except Exception:
            await earnkit.release(event_id)
            raise
        await earnkit.capture(event_id)

Each instance holds its own configuration and HTTP client.
"""

import asyncio
import inspect
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..utils.logging import get_logger
from .errors import (
    EarnKitApiError,
    EarnKitInitializationError,
    EarnKitInputError,
    EarnKitTimeoutError,
)

logger = get_logger("earnkit.sdk")

DEFAULT_BASE_URL = "http://localhost:3000"
DEFAULT_TIMEOUT = 30.0

# 1 initial attempt + 2 retries
MAX_RETRIES = 2


@dataclass(frozen=True)
class UserBalance:
    """A user's balance for the agent, as returned by the API."""
    eth: str
    credits: str

    @property
    def eth_amount(self) -> Decimal:
        return Decimal(self.eth)

    @property
    def credit_amount(self) -> int:
        return int(self.credits)


@dataclass(frozen=True)
class TopUpOption:
    """A purchasable top-up."""
    label: str
    amount_in_eth: str
    to: str
    value: str  # wei
    credits_to_top_up: Optional[int] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "TopUpOption":
        return cls(
            label=data["label"],
            amount_in_eth=data["amountInEth"],
            to=data["to"],
            value=data["value"],
            credits_to_top_up=data.get("creditsToTopUp"),
        )


def is_retryable(exc: BaseException) -> bool:
    """Network failures and 5xx/408 responses are retried; nothing else."""
    if isinstance(exc, EarnKitApiError):
        return exc.is_retryable
    return isinstance(exc, httpx.TransportError)


def _validate_string(
    value: Any,
    param_name: str,
    *,
    required: bool = True,
    starts_with: Optional[str] = None,
    error_type: type[Exception] = EarnKitInputError,
) -> None:
    """Check a string parameter, raising error_type on failure."""
    if not required and value is None:
        return

    if not isinstance(value, str):
        raise error_type(f"`{param_name}` must be a valid string.")

    if value.strip() == "":
        raise error_type(f"`{param_name}` cannot be empty.")

    if starts_with and not value.startswith(starts_with):
        raise error_type(f'`{param_name}` must start with "{starts_with}".')


class EarnKit:
    """Client for one agent's EarnKit billing."""

    def __init__(
        self,
        agent_id: str,
        base_url: Optional[str] = None,
        debug: bool = False,
        request_timeout: float = DEFAULT_TIMEOUT,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Configure the client. Makes no network calls.

        Args:
            agent_id: The agent's ID from the EarnKit dashboard
            base_url: EarnKit backend URL (default http://localhost:3000)
            debug: Log every request and retry
            request_timeout: Overall limit in seconds for one method call,
                retries included
            retry_base_delay: Backoff unit in seconds; retries wait 1x, 2x, 4x
            transport: Custom httpx transport

        Raises:
            EarnKitInitializationError: If agent_id or base_url is invalid
        """
        _validate_string(agent_id, "agent_id", error_type=EarnKitInitializationError)

        if base_url is not None:
            try:
                url = httpx.URL(base_url)
            except (httpx.InvalidURL, TypeError) as e:
                raise EarnKitInitializationError(
                    f"base_url provided to the constructor is not a valid URL. Error: {e}"
                ) from e
            if url.scheme not in ("http", "https") or not url.host:
                raise EarnKitInitializationError(
                    f"base_url provided to the constructor is not a valid URL: {base_url!r}"
                )

        if request_timeout <= 0:
            raise EarnKitInitializationError("request_timeout must be positive.")

        self.agent_id = agent_id
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.debug = debug
        self.request_timeout = request_timeout
        self.retry_base_delay = retry_base_delay

        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

        self._log("SDK instance created", agent_id=agent_id, base_url=self.base_url)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=f"{self.base_url}/api",
                timeout=self.request_timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> "EarnKit":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal request helpers
    # ------------------------------------------------------------------

    def _log(self, message: str, **kwargs: Any) -> None:
        if self.debug:
            logger.info(message, **kwargs)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self._log(
            "Request failed, retrying",
            attempt=retry_state.attempt_number,
            delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]],
        body: Optional[dict[str, Any]],
    ) -> Any:
        client = await self._get_client()
        self._log("Making API call", method=method, path=path)

        response = await client.request(method, path, params=params, json=body)

        if response.is_error:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text
            message = None
            if isinstance(error_body, dict):
                message = error_body.get("message")
            raise EarnKitApiError(
                message or f"HTTP Error: {response.status_code}",
                response.status_code,
                error_body,
            )

        return response.json()

    async def _send_with_retries(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]],
        body: Optional[dict[str, Any]],
    ) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_RETRIES + 1),
                wait=wait_exponential(multiplier=self.retry_base_delay),
                retry=retry_if_exception(is_retryable),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    return await self._send(method, path, params, body)
        except httpx.TimeoutException as e:
            raise EarnKitTimeoutError(
                f"Request timed out after {self.request_timeout}s", str(e)
            ) from e
        except httpx.TransportError as e:
            raise EarnKitApiError(f"Network request failed: {e}", 0, str(e)) from e

    async def _api_call(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Make an API call with retries, bounded by request_timeout overall."""
        try:
            return await asyncio.wait_for(
                self._send_with_retries(method, path, params, body),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError as e:
            raise EarnKitTimeoutError(
                f"Request timed out after {self.request_timeout}s"
            ) from e

    # ------------------------------------------------------------------
    # Usage lifecycle
    # ------------------------------------------------------------------

    async def track(
        self,
        wallet_address: str,
        idempotency_key: Optional[str] = None,
        credits_to_deduct: Optional[int] = None,
    ) -> str:
        """
        Hold the fee for one use before running the AI logic.

        Returns:
            The event ID to capture or release

        Raises:
            EarnKitInputError: On invalid parameters
            EarnKitApiError: E.g. status 402 when the user must top up
        """
        _validate_string(wallet_address, "wallet_address", starts_with="0x")
        _validate_string(idempotency_key, "idempotency_key", required=False)
        if credits_to_deduct is not None and (
            not isinstance(credits_to_deduct, int) or credits_to_deduct <= 0
        ):
            raise EarnKitInputError("`credits_to_deduct` must be a positive integer.")

        body: dict[str, Any] = {
            "agentId": self.agent_id,
            "walletAddress": wallet_address,
        }
        if idempotency_key is not None:
            body["idempotencyKey"] = idempotency_key
        if credits_to_deduct is not None:
            body["creditsToDeduct"] = credits_to_deduct

        data = await self._api_call("POST", "/track", body=body)

        event_id = data.get("eventId") if isinstance(data, dict) else None
        if not event_id:
            raise EarnKitApiError(
                "Received an unexpected response format from the server.", 500, data
            )
        return event_id

    async def capture(self, event_id: str) -> bool:
        """Finalize the charge after the AI logic succeeded."""
        _validate_string(event_id, "event_id")
        data = await self._api_call("POST", "/capture", body={"eventId": event_id})
        return bool(data.get("success"))

    async def release(self, event_id: str) -> bool:
        """Refund the held charge after the AI logic failed."""
        _validate_string(event_id, "event_id")
        data = await self._api_call("POST", "/release", body={"eventId": event_id})
        return bool(data.get("success"))

    # ------------------------------------------------------------------
    # Balances and top-ups
    # ------------------------------------------------------------------

    async def get_balance(self, wallet_address: str) -> UserBalance:
        """Get the user's current ETH and credit balance."""
        _validate_string(wallet_address, "wallet_address", starts_with="0x")
        data = await self._api_call(
            "GET",
            "/balance",
            params={"agentId": self.agent_id, "walletAddress": wallet_address},
        )
        return UserBalance(eth=str(data["eth"]), credits=str(data["credits"]))

    async def get_top_up_details(self) -> list[TopUpOption]:
        """Get the agent's purchase options."""
        data = await self._api_call(
            "GET", "/top-up-details", params={"agentId": self.agent_id}
        )
        return [TopUpOption.from_api(o) for o in data.get("options", [])]

    async def submit_top_up_transaction(
        self,
        tx_hash: str,
        wallet_address: str,
        amount_in_eth: str,
        credits_to_top_up: Optional[int] = None,
    ) -> dict[str, Any]:
        """
        Submit a deposit transaction hash for confirmation.

        Returns:
            The backend's response, status PENDING_CONFIRMATION
        """
        _validate_string(tx_hash, "tx_hash", starts_with="0x")
        _validate_string(wallet_address, "wallet_address", starts_with="0x")
        _validate_string(amount_in_eth, "amount_in_eth")

        body: dict[str, Any] = {
            "agentId": self.agent_id,
            "txHash": tx_hash,
            "walletAddress": wallet_address,
            "amountInEth": amount_in_eth,
        }
        if credits_to_top_up is not None:
            body["creditsToTopUp"] = credits_to_top_up

        return await self._api_call("POST", "/top-up-details", body=body)

    async def poll_for_balance_update(
        self,
        wallet_address: str,
        initial_balance: UserBalance,
        on_confirmation: Callable[[UserBalance], Any],
        on_timeout: Optional[Callable[[], Any]] = None,
        poll_interval: float = 10.0,
        max_polls: int = 30,
    ) -> Optional[UserBalance]:
        """
        Poll the balance until ETH or credits rise above initial_balance.

        Calls on_confirmation with the new balance, or on_timeout after
        max_polls polls or on the first error. Callbacks may be coroutines.
        Run it with asyncio.create_task to poll in the background.

        Returns:
            The increased balance, or None on timeout/error
        """
        for poll in range(1, max_polls + 1):
            await asyncio.sleep(poll_interval)

            try:
                current = await self.get_balance(wallet_address)
                increased = (
                    current.eth_amount > initial_balance.eth_amount
                    or current.credit_amount > initial_balance.credit_amount
                )
            except Exception as e:
                self._log("Error during polling, stopping", error=str(e), poll=poll)
                await _invoke(on_timeout)
                return None

            if increased:
                self._log("Balance update detected", poll=poll)
                await _invoke(on_confirmation, current)
                return current

        self._log(
            "Polling for balance update timed out",
            seconds=max_polls * poll_interval,
        )
        await _invoke(on_timeout)
        return None


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
