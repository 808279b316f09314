from __future__ import annotations

# Role -> actions it may perform. Evaluated once per request by auth_deps.require().
PLAYER_ACTIONS = frozenset({
    "match.view",
    "match.join",
    "match.leave",
    "match.screenshot",
    "challenge.create",
    "challenge.cancel",
    "wallet.view",
    "wallet.deposit",
})

OPERATOR_ACTIONS = frozenset({
    "match.view",
    "match.create",
    "match.credentials",
    "match.start",
    "match.cancel",
    "match.verify_result",
    "match.declare_results",
    "prize_rules.manage",
    "wallet.view",
})

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "user": PLAYER_ACTIONS,
    "host": PLAYER_ACTIONS | {"match.create", "match.credentials", "match.start"},
    "support": frozenset({"match.view", "wallet.view"}),
    "finance_manager": frozenset({"match.view", "wallet.view", "ledger.summary"}),
    "match_manager": OPERATOR_ACTIONS,
    "admin": OPERATOR_ACTIONS | {"ledger.summary"},
    "super_admin": OPERATOR_ACTIONS | {"ledger.summary"},
}

# Operators never take part in player-vs-player matches.
PRIVILEGED_ROLES = frozenset({"admin", "super_admin", "match_manager"})


def is_allowed(role: str | None, action: str) -> bool:
    return action in ROLE_PERMISSIONS.get(role or "", frozenset())


def is_privileged(role: str | None) -> bool:
    return (role or "") in PRIVILEGED_ROLES
