"""Tests for tools/trade_executor.py — HTTP quote/execute mapping and the mock executor."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from tools.trade_executor import (
    HttpTradeExecutor,
    MockTradeExecutor,
    TradeExecutionError,
    TradeReceipt,
)

_USDC_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
_WETH = "0x4200000000000000000000000000000000000006"


def _response(status: int = 200, body: dict | None = None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body or {}
    resp.text = text
    return resp


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock(spec=httpx.Client)
    client.get.return_value = _response(body={"liquidityAvailable": True, "toAmount": "1"})
    client.post.return_value = _response(body={"transactionHash": "0xabc"})
    return client


@pytest.fixture
def executor(client: MagicMock) -> HttpTradeExecutor:
    return HttpTradeExecutor("https://trade.example/", "k", client=client)


class TestHttpTradeExecutor:
    def test_quote_then_execute(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        receipt = executor.execute_swap("deadbeef", "USDC", "WETH", Decimal("12.5"))

        assert receipt == TradeReceipt(tx_id="0xabc", user_operation_hash=None)
        url = client.get.call_args.args[0]
        params = client.get.call_args.kwargs["params"]
        assert url == "https://trade.example/swap/quote"
        assert params["fromToken"] == _USDC_SEPOLIA
        assert params["toToken"] == _WETH
        assert params["fromAmount"] == "12500000"
        assert params["taker"] == "0xdeadbeef"
        assert params["network"] == "base-sepolia"

        body = client.post.call_args.kwargs["json"]
        assert client.post.call_args.args[0] == "https://trade.example/swap/execute"
        assert body["taker"] == "0xdeadbeef"
        assert body["quote"]["liquidityAvailable"] is True

    def test_user_operation_hash_used_when_no_tx_hash(
        self, executor: HttpTradeExecutor, client: MagicMock
    ) -> None:
        client.post.return_value = _response(body={"userOpHash": "0xop"})
        receipt = executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))
        assert receipt.tx_id == "0xop"
        assert receipt.user_operation_hash == "0xop"

    def test_no_hash_leaves_tx_id_empty(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.post.return_value = _response(body={})
        assert executor.execute_swap("0xw", "USDC", "WETH", Decimal("1")).tx_id is None

    def test_insufficient_liquidity(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.get.return_value = _response(body={"liquidityAvailable": False})
        with pytest.raises(TradeExecutionError, match="insufficient liquidity"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))
        client.post.assert_not_called()

    def test_quote_http_error_status(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.get.return_value = _response(status=400, text="bad pair")
        with pytest.raises(TradeExecutionError, match="swap quote error 400: bad pair"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))

    def test_execute_http_error_status(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.post.return_value = _response(status=500, text="reverted")
        with pytest.raises(TradeExecutionError, match="swap execute error 500"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))

    def test_timeout_surfaces_as_execution_error(
        self, executor: HttpTradeExecutor, client: MagicMock
    ) -> None:
        client.get.side_effect = httpx.ReadTimeout("slow upstream")
        with pytest.raises(TradeExecutionError, match="timed out after 20s"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))

    def test_submit_is_never_retried(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.post.side_effect = httpx.ConnectError("connection refused")
        with pytest.raises(TradeExecutionError, match="transport error"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))
        assert client.post.call_count == 1

    def test_malformed_json(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        client.get.return_value.json.side_effect = ValueError("Expecting value")
        with pytest.raises(TradeExecutionError, match="malformed response"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("1"))

    def test_unknown_token(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        with pytest.raises(TradeExecutionError, match="not configured for DAI"):
            executor.execute_swap("0xw", "DAI", "WETH", Decimal("1"))
        client.get.assert_not_called()

    def test_dust_amount_rejected(self, executor: HttpTradeExecutor, client: MagicMock) -> None:
        with pytest.raises(TradeExecutionError, match="rounds to zero"):
            executor.execute_swap("0xw", "USDC", "WETH", Decimal("0.0000001"))
        client.get.assert_not_called()

    def test_mainnet_tokens(self, client: MagicMock) -> None:
        executor = HttpTradeExecutor("https://trade.example", None, network="base", client=client)
        executor.execute_swap("0xw", "USDC", "ETH", Decimal("1"))
        params = client.get.call_args.kwargs["params"]
        assert params["network"] == "base"
        assert params["toToken"] == _WETH
        assert params["fromToken"] != _USDC_SEPOLIA


class TestMockTradeExecutor:
    def test_records_calls_and_numbers_tx_ids(self) -> None:
        executor = MockTradeExecutor()
        first = executor.execute_swap("0xw", "USDC", "WETH", Decimal("2"))
        second = executor.execute_swap("0xw", "WETH", "USDC", Decimal("0.5"))
        assert first.tx_id == "MOCK-SWAP-USDC-WETH-2000000-1"
        assert second.tx_id == "MOCK-SWAP-WETH-USDC-500000-2"
        assert [c[1] for c in executor.calls] == ["USDC", "WETH"]
