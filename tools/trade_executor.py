"""Trade execution collaborators for approved swaps.

The enforcer calls ``TradeExecutor.execute_swap`` only after a request has
passed every policy rule and the policy has a wallet.  Implementations:

  - ``HttpTradeExecutor`` quotes then submits a swap against a custody /
    trade API over HTTP
  - ``MockTradeExecutor`` returns a synthetic transaction id for local runs

Every failure, including timeouts and transport errors, surfaces as
``TradeExecutionError``; the enforcer logs it as an execution failure.
Submitting a swap is never retried here: a blind retry of a financial
action could execute it twice.  Only the read-only quote is retried.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.network_config import NetworkDetector, NetworkTokens, NetworkType, usd_to_base_units

logger = logging.getLogger(__name__)


class TradeExecutionError(Exception):
    """The swap could not be executed; the message is safe to show to callers."""


@dataclass(frozen=True)
class TradeReceipt:
    tx_id: str | None = None
    user_operation_hash: str | None = None


class TradeExecutor(ABC):
    """Abstract swap execution collaborator."""

    @abstractmethod
    def execute_swap(
        self,
        wallet_id: str,
        from_token: str,
        to_token: str,
        amount_usd: Decimal,
    ) -> TradeReceipt:
        """Execute a swap from *wallet_id* and return its receipt."""
        raise NotImplementedError

    def close(self) -> None:
        """Release transport resources; nothing to do by default."""


def _taker_address(wallet_id: str) -> str:
    return wallet_id if wallet_id.startswith("0x") else f"0x{wallet_id}"


class HttpTradeExecutor(TradeExecutor):
    """Quote-then-execute swaps through an HTTP trade API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        network: str = "base-sepolia",
        timeout_s: float = 20.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._network: NetworkType = NetworkDetector.detect(network)
        self._tokens: NetworkTokens = NetworkDetector.get_tokens(self._network)
        self._timeout_s = timeout_s
        headers: Dict[str, str] = {}
        if api_key:
            headers["x-api-key"] = api_key
        self._client = client or httpx.Client(headers=headers, timeout=timeout_s)

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _quote(self, params: Dict[str, str]) -> Dict[str, Any]:
        resp = self._client.get(f"{self._base_url}/swap/quote", params=params)
        if resp.status_code != 200:
            raise TradeExecutionError(f"swap quote error {resp.status_code}: {resp.text}")
        return resp.json()

    def _submit(self, quote: Dict[str, Any], taker: str) -> Dict[str, Any]:
        resp = self._client.post(
            f"{self._base_url}/swap/execute",
            json={"quote": quote, "taker": taker, "network": self._network.value},
        )
        if resp.status_code != 200:
            raise TradeExecutionError(f"swap execute error {resp.status_code}: {resp.text}")
        return resp.json()

    def execute_swap(
        self,
        wallet_id: str,
        from_token: str,
        to_token: str,
        amount_usd: Decimal,
    ) -> TradeReceipt:
        try:
            from_address = self._tokens.address_for_symbol(from_token)
            to_address = self._tokens.address_for_symbol(to_token)
        except ValueError as exc:
            raise TradeExecutionError(str(exc)) from exc

        from_amount = usd_to_base_units(amount_usd)
        if from_amount <= 0:
            raise TradeExecutionError(f"swap amount {amount_usd} USD rounds to zero base units")
        taker = _taker_address(wallet_id)

        logger.info(
            "HttpTradeExecutor: quoting %s -> %s amount=%d taker=%s network=%s",
            from_token,
            to_token,
            from_amount,
            taker,
            self._network.value,
        )
        try:
            quote = self._quote(
                {
                    "network": self._network.value,
                    "fromToken": from_address,
                    "toToken": to_address,
                    "fromAmount": str(from_amount),
                    "taker": taker,
                }
            )
            if quote.get("liquidityAvailable") is False:
                raise TradeExecutionError("Swap not available - insufficient liquidity")
            result = self._submit(quote, taker)
        except httpx.TimeoutException as exc:
            raise TradeExecutionError(
                f"trade API timed out after {self._timeout_s:g}s: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TradeExecutionError(f"trade API transport error: {exc}") from exc
        except ValueError as exc:
            # Non-JSON response body.
            raise TradeExecutionError(f"trade API returned malformed response: {exc}") from exc

        tx_hash = result.get("transactionHash")
        user_op = result.get("userOpHash")
        receipt = TradeReceipt(tx_id=tx_hash or user_op or None, user_operation_hash=user_op)
        logger.info("HttpTradeExecutor: swap submitted, tx=%s", receipt.tx_id)
        return receipt


class MockTradeExecutor(TradeExecutor):
    """Synthetic swap implementation for tests and local demos."""

    def __init__(self, network: str = "base-sepolia") -> None:
        self._network = NetworkDetector.detect(network)
        self.calls: list[tuple[str, str, str, Decimal]] = []

    def execute_swap(
        self,
        wallet_id: str,
        from_token: str,
        to_token: str,
        amount_usd: Decimal,
    ) -> TradeReceipt:
        self.calls.append((wallet_id, from_token, to_token, amount_usd))
        logger.info(
            "MockTradeExecutor (%s): swap %s -> %s amount_usd=%s wallet=%s",
            self._network.value,
            from_token,
            to_token,
            amount_usd,
            wallet_id,
        )
        fake_tx = f"MOCK-SWAP-{from_token}-{to_token}-{usd_to_base_units(amount_usd)}-{len(self.calls)}"
        return TradeReceipt(tx_id=fake_tx)
