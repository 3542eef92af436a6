"""Declarative policy specifications.

These mirror the runtime checks in core/policy_engine.py and core/enforcement.py
and serve as human-readable documentation of every rule an agent request is
held to.  ``RULE_CATALOGUE`` keys match the rule function names so the two
cannot silently drift apart (see tests/test_default_policies.py).
"""

# Options a principal can grant when issuing a policy.
SUPPORTED_TOKENS = ("USDC", "WETH")
SUPPORTED_PROTOCOLS = ("uniswap_v3",)
SUPPORTED_ACTIONS = ("swap",)

DEFAULT_EXPIRY_HOURS = 24

RULE_CATALOGUE = {
    "check_agent": {
        "description": "The requesting agent must be the one the policy was issued to.",
        "reason": "agent ID mismatch: expected <policy agent>, got <request agent>",
    },
    "check_expiry": {
        "description": "The policy grants nothing at or after expiresAt.",
        "reason": "policy expired at <expiresAt>",
    },
    "check_budget": {
        "description": (
            "amountUsd must fit in dailyBudgetUsd minus today's ALLOWED spend "
            "(UTC day, recomputed from the action log)."
        ),
        "reason": "insufficient daily budget: requested <amount>, remaining <remaining>",
    },
    "check_protocol": {
        "description": "The protocol must be in allowedProtocols.",
        "reason": "protocol not allowed: <protocol>. Allowed: <list>",
    },
    "check_action": {
        "description": "The action must be in allowedActions.",
        "reason": "action not allowed: <action>. Allowed: <list>",
    },
    "check_tokens": {
        "description": "Both tokenIn and tokenOut must be in allowedTokens; one reason per side.",
        "reason": "token not allowed: <token> (<side>). Allowed: <list>",
    },
}

PRECONDITIONS = {
    "policy_exists": {
        "description": "The policy id must resolve; checked before any rule.",
        "reason": "policy not found",
    },
    "wallet_configured": {
        "description": "An approved request still needs a provisioned agent wallet to execute.",
        "reason": "agent wallet not configured",
    },
}
