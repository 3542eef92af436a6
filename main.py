"""Entry point: load config → build store, executor, enforcer → run one command."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from core.config import AppConfig, load_config
from core.enforcement import Enforcer, enforce_payload
from core.models import EnforcementResult, InvalidRequest, Outcome
from core.policy_service import PolicyNotFound, PolicyService
from core.store import LedgerStore, StoreError, make_store
from policies.default_policies import (
    DEFAULT_EXPIRY_HOURS,
    PRECONDITIONS,
    RULE_CATALOGUE,
    SUPPORTED_ACTIONS,
    SUPPORTED_PROTOCOLS,
    SUPPORTED_TOKENS,
)
from tools.trade_executor import HttpTradeExecutor, MockTradeExecutor, TradeExecutor
from tools.wallet_provisioner import (
    HttpWalletProvisioner,
    MockWalletProvisioner,
    WalletProvisioner,
    WalletProvisioningError,
)

# Logs go to stderr so stdout carries only the JSON responses.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKED = 2
EXIT_EXECUTION_FAILED = 3


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delegated spend enforcement for autonomous agents")
    sub = parser.add_subparsers(dest="command", required=True)

    ex = sub.add_parser("execute", help="enforce one agent action request (JSON)")
    ex.add_argument("--file", default="-", help="request JSON file, '-' for stdin")

    cp = sub.add_parser("create-policy", help="issue a policy to an agent")
    cp.add_argument("--owner", required=True)
    cp.add_argument("--agent", required=True)
    cp.add_argument("--budget", required=True, help="daily budget in USD")
    cp.add_argument("--tokens", type=_csv, default=list(SUPPORTED_TOKENS))
    cp.add_argument("--protocols", type=_csv, default=list(SUPPORTED_PROTOCOLS))
    cp.add_argument("--actions", type=_csv, default=list(SUPPORTED_ACTIONS))
    cp.add_argument("--expiry-hours", type=int, default=DEFAULT_EXPIRY_HOURS)

    lg = sub.add_parser("logs", help="list a policy's action log, newest first")
    lg.add_argument("--owner", required=True)
    lg.add_argument("--policy", required=True)

    wl = sub.add_parser("wallet", help="provision the policy's agent wallet if missing")
    wl.add_argument("--owner", required=True)
    wl.add_argument("--policy", required=True)

    bl = sub.add_parser("balances", help="token balances held by the policy's agent wallet")
    bl.add_argument("--owner", required=True)
    bl.add_argument("--policy", required=True)

    sub.add_parser("wallet-report", help="wallets shared by policies and policies without one")
    sub.add_parser("rules", help="print the rules every request is checked against")
    return parser.parse_args(argv)


# ── wiring ────────────────────────────────────────────────────────────────────


def build_store(config: AppConfig) -> LedgerStore:
    return make_store(config.store.backend, config.store.path)


def build_executor(config: AppConfig) -> TradeExecutor:
    cfg = config.executor
    if cfg.mock or not cfg.base_url:
        logger.info("trade executor: mock (%s)", cfg.network)
        return MockTradeExecutor(cfg.network)
    logger.info("trade executor: %s (%s, timeout=%ss)", cfg.base_url, cfg.network, cfg.timeout_s)
    return HttpTradeExecutor(cfg.base_url, cfg.api_key, network=cfg.network, timeout_s=cfg.timeout_s)


def build_provisioner(config: AppConfig) -> WalletProvisioner:
    if not config.wallet.base_url:
        return MockWalletProvisioner()
    return HttpWalletProvisioner(
        config.wallet.base_url,
        config.wallet.api_key,
        network=config.executor.network,
        timeout_s=config.executor.timeout_s,
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _read_request(path: str) -> dict[str, Any]:
    try:
        if path == "-":
            return json.load(sys.stdin)
        with open(path) as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise InvalidRequest(f"request is not valid JSON: {exc}") from exc
    except OSError as exc:
        raise InvalidRequest(f"cannot read request {path}: {exc}") from exc


# ── commands ──────────────────────────────────────────────────────────────────


def run(args: argparse.Namespace, config: AppConfig) -> int:
    if args.command == "rules":
        _emit({"rules": RULE_CATALOGUE, "preconditions": PRECONDITIONS})
        return EXIT_OK

    store = build_store(config)

    if args.command == "execute":
        executor = build_executor(config)
        try:
            result = _execute(args, config, store, executor)
        finally:
            executor.close()
        _emit(result.to_response())
        if result.outcome is Outcome.APPROVED:
            return EXIT_OK
        if result.outcome is Outcome.EXECUTION_FAILED:
            return EXIT_EXECUTION_FAILED
        return EXIT_BLOCKED

    provisioner = build_provisioner(config)
    try:
        return _manage(args, PolicyService(store, provisioner))
    finally:
        provisioner.close()


def _execute(
    args: argparse.Namespace,
    config: AppConfig,
    store: LedgerStore,
    executor: TradeExecutor,
) -> EnforcementResult:
    enforcer = Enforcer(store, executor, pending_tx_id=config.enforcement.pending_tx_id)
    return enforce_payload(
        enforcer,
        _read_request(args.file),
        default_source=config.enforcement.default_source,
    )


def _manage(args: argparse.Namespace, service: PolicyService) -> int:
    if args.command == "create-policy":
        policy = service.create_policy(
            owner_id=args.owner,
            agent_id=args.agent,
            daily_budget_usd=args.budget,
            allowed_tokens=args.tokens,
            allowed_protocols=args.protocols,
            allowed_actions=args.actions,
            expiry_hours=args.expiry_hours,
        )
        _emit(policy.to_dict())
        return EXIT_OK

    if args.command == "logs":
        _emit([entry.to_dict() for entry in service.list_logs(args.owner, args.policy)])
        return EXIT_OK

    if args.command == "wallet":
        policy, created = service.ensure_wallet(args.owner, args.policy)
        _emit({"agentWalletId": policy.agent_wallet_id, "alreadyExists": not created})
        return EXIT_OK

    if args.command == "balances":
        address, balances = service.wallet_balances(args.owner, args.policy)
        _emit({"walletAddress": address, "balances": [b.to_dict() for b in balances]})
        return EXIT_OK

    if args.command == "wallet-report":
        report = service.wallet_report()
        _emit(
            {
                "sharedWallets": report.shared_wallets,
                "policiesWithoutWallet": report.policies_without_wallet,
            }
        )
        return EXIT_OK

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config()
    except EnvironmentError as exc:
        logger.error("configuration error: %s", exc)
        return EXIT_ERROR

    logger.info("config loaded — store=%s path=%s", config.store.backend, config.store.path)
    try:
        return run(args, config)
    except (InvalidRequest, PolicyNotFound) as exc:
        logger.error("rejected: %s", exc)
        _emit({"error": str(exc)})
        return EXIT_ERROR
    except StoreError as exc:
        logger.error("ledger unavailable: %s", exc)
        return EXIT_ERROR
    except WalletProvisioningError as exc:
        logger.error("wallet provisioning failed: %s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
