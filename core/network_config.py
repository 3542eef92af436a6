from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum


class NetworkType(Enum):
    BASE_SEPOLIA = "base-sepolia"
    BASE = "base"


@dataclass(frozen=True)
class NetworkTokens:
    """ERC-20 contract addresses per network for the tokens agents may trade."""

    usdc: str
    weth: str

    def address_for_symbol(self, symbol: str) -> str:
        sym = symbol.upper()
        if sym == "USDC":
            return self.usdc
        if sym in {"WETH", "ETH"}:
            return self.weth
        raise ValueError(f"Token addresses not configured for {symbol}")


BASE_SEPOLIA_TOKENS = NetworkTokens(
    usdc="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    weth="0x4200000000000000000000000000000000000006",
)

BASE_TOKENS = NetworkTokens(
    usdc="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    weth="0x4200000000000000000000000000000000000006",
)

# Notional is sized in USDC base units until a price oracle is wired in.
USD_DECIMALS = 6


def usd_to_base_units(amount_usd: Decimal) -> int:
    """Truncate a USD notional to 6-decimal base units (1.2345678 → 1234567)."""
    scaled = (amount_usd * (Decimal(10) ** USD_DECIMALS)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


class NetworkDetector:
    """Helpers for resolving the network name and its token configuration."""

    @staticmethod
    def detect(name: str) -> NetworkType:
        """Unknown names fall back to the testnet so nothing trades on mainnet by accident."""
        try:
            return NetworkType(name.strip().lower())
        except ValueError:
            return NetworkType.BASE_SEPOLIA

    @staticmethod
    def get_tokens(network: NetworkType) -> NetworkTokens:
        return BASE_TOKENS if network == NetworkType.BASE else BASE_SEPOLIA_TOKENS
