"""Pure policy evaluation for proposed transfers."""

from __future__ import annotations

from pydantic import BaseModel

from . import reason_codes
from .settings import PolicySettings
from .types import PolicyDecision, normalize_address

_SEVERITY = {
    PolicyDecision.AUTO_APPROVE: 0,
    PolicyDecision.REQUIRE_APPROVAL: 1,
    PolicyDecision.REJECT: 2,
}


class PolicyResult(BaseModel):
    """Decision plus every reason code that contributed to it."""

    model_config = {"frozen": True}

    decision: PolicyDecision
    reasons: tuple[str, ...]
    allowlist_matched: bool
    projected_balance_cents: int | None
    projected_spent_last_24h_cents: int


def evaluate(
    amount_cents: int,
    to_address: str,
    recent_spend_last_24h_cents: int,
    settings: PolicySettings,
    *,
    balance_cents: int | None = None,
) -> PolicyResult:
    """Score a transfer against ``settings``.

    Every rule runs; each triggered rule adds its reason code and the most
    severe outcome wins (reject > require_approval > auto_approve). No I/O,
    no clock: identical inputs always produce identical results.
    """
    decision = PolicyDecision.AUTO_APPROVE
    reasons: list[str] = []

    def trigger(outcome: PolicyDecision, code: str) -> None:
        nonlocal decision
        reasons.append(code)
        if _SEVERITY[outcome] > _SEVERITY[decision]:
            decision = outcome

    projected_spent = recent_spend_last_24h_cents + max(amount_cents, 0)
    projected_balance = None if balance_cents is None else balance_cents - amount_cents
    allowlist_matched = normalize_address(to_address) in settings.allowlist

    if amount_cents <= 0:
        trigger(PolicyDecision.REJECT, reason_codes.NON_POSITIVE_AMOUNT)
    if amount_cents > settings.hard_per_transfer_cents:
        trigger(PolicyDecision.REJECT, reason_codes.ABOVE_HARD_PER_TRANSFER_LIMIT)
    if projected_spent > settings.hard_daily_limit_cents:
        trigger(PolicyDecision.REJECT, reason_codes.ABOVE_HARD_DAILY_LIMIT)
    if settings.require_allowlist and not allowlist_matched:
        trigger(PolicyDecision.REQUIRE_APPROVAL, reason_codes.RECIPIENT_NOT_ALLOWLISTED)
    if projected_balance is None:
        trigger(PolicyDecision.REQUIRE_APPROVAL, reason_codes.BALANCE_UNKNOWN)
    elif projected_balance < settings.min_reserve_cents:
        trigger(PolicyDecision.REQUIRE_APPROVAL, reason_codes.BELOW_MIN_RESERVE)

    if decision is PolicyDecision.AUTO_APPROVE:
        if amount_cents <= settings.auto_approve_max_cents:
            reasons.append(reason_codes.WITHIN_AUTO_APPROVE_LIMIT)
        else:
            trigger(PolicyDecision.REQUIRE_APPROVAL, reason_codes.ABOVE_AUTO_APPROVE_THRESHOLD)
    elif amount_cents > settings.auto_approve_max_cents and amount_cents > 0:
        reasons.append(reason_codes.ABOVE_AUTO_APPROVE_THRESHOLD)

    return PolicyResult(
        decision=decision,
        reasons=tuple(reasons),
        allowlist_matched=allowlist_matched,
        projected_balance_cents=projected_balance,
        projected_spent_last_24h_cents=projected_spent,
    )
