"""Load and validate application configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


DEFAULT_SOURCE = "local-demo"
PENDING_TX_ID = "pending"


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "sqlite"  # memory | json | sqlite
    path: str = "data/spendguard.db"


@dataclass(frozen=True)
class ExecutorConfig:
    base_url: str | None = None
    api_key: str | None = None
    network: str = "base-sepolia"
    timeout_s: float = 20.0
    # Synthetic executor; forced on when no base_url is configured.
    mock: bool = True


@dataclass(frozen=True)
class WalletConfig:
    base_url: str | None = None
    api_key: str | None = None


@dataclass(frozen=True)
class EnforcementConfig:
    default_source: str = DEFAULT_SOURCE
    pending_tx_id: str = PENDING_TX_ID


@dataclass(frozen=True)
class AppConfig:
    store: StoreConfig
    executor: ExecutorConfig
    wallet: WalletConfig
    enforcement: EnforcementConfig


_STORE_BACKENDS = frozenset({"memory", "json", "sqlite"})


def _getenv(name: str, default: str | None = None) -> str | None:
    """os.getenv wrapper that strips inline comments (e.g. '20  # secs' → '20')."""
    raw = os.getenv(name, default)
    if raw is None:
        return None
    return raw.split(" #")[0].strip()


def _require(name: str) -> str:
    value = _getenv(name)
    if not value:
        raise EnvironmentError(f"Required environment variable {name} is not set")
    return value


def _flag(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def load_config() -> AppConfig:
    """Build AppConfig from environment. Raises EnvironmentError on bad values."""
    backend = (_getenv("SPENDGUARD_STORE", "sqlite") or "sqlite").lower()
    if backend not in _STORE_BACKENDS:
        raise EnvironmentError(
            f"SPENDGUARD_STORE must be one of {sorted(_STORE_BACKENDS)}, got {backend!r}"
        )
    default_path = "data/spendguard.json" if backend == "json" else "data/spendguard.db"

    trade_url = _getenv("TRADE_API_URL") or None
    mock = _flag("TRADE_MOCK", default=trade_url is None) or trade_url is None
    # A live trade API is never called unauthenticated.
    trade_key = None if mock else _require("TRADE_API_KEY")
    try:
        timeout_s = float(_getenv("TRADE_TIMEOUT_S", "20"))  # type: ignore[arg-type]
    except ValueError as exc:
        raise EnvironmentError(f"TRADE_TIMEOUT_S is not a number: {exc}") from exc

    return AppConfig(
        store=StoreConfig(
            backend=backend,
            path=_getenv("SPENDGUARD_STORE_PATH", default_path),  # type: ignore[arg-type]
        ),
        executor=ExecutorConfig(
            base_url=trade_url,
            api_key=trade_key,
            network=_getenv("TRADE_NETWORK", "base-sepolia"),  # type: ignore[arg-type]
            timeout_s=timeout_s,
            mock=mock,
        ),
        wallet=WalletConfig(
            base_url=_getenv("WALLET_API_URL") or None,
            api_key=_getenv("WALLET_API_KEY") or None,
        ),
        enforcement=EnforcementConfig(
            default_source=_getenv("SPENDGUARD_DEFAULT_SOURCE", DEFAULT_SOURCE),  # type: ignore[arg-type]
        ),
    )
