"""Tests for policies/default_policies.py — the catalogue stays in step with the engine."""

from __future__ import annotations

from core.enforcement import POLICY_NOT_FOUND, WALLET_NOT_CONFIGURED
from core.policy_engine import RULES
from policies.default_policies import PRECONDITIONS, RULE_CATALOGUE


class TestRuleCatalogue:
    def test_keys_match_rule_functions_in_order(self) -> None:
        assert list(RULE_CATALOGUE) == [rule.__name__ for rule in RULES]

    def test_every_entry_documented(self) -> None:
        for name, entry in RULE_CATALOGUE.items():
            assert entry["description"], name
            assert entry["reason"], name

    def test_precondition_reasons_match_enforcer(self) -> None:
        assert PRECONDITIONS["policy_exists"]["reason"] == POLICY_NOT_FOUND
        assert PRECONDITIONS["wallet_configured"]["reason"] == WALLET_NOT_CONFIGURED
