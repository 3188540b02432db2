from __future__ import annotations

import pytest

from treasuryagent import reason_codes
from treasuryagent.policy import evaluate
from treasuryagent.settings import PolicySettings
from treasuryagent.types import PolicyDecision

from conftest import ALLOWED, STRANGER


def _settings(**overrides: object) -> PolicySettings:
    values: dict[str, object] = {
        "require_allowlist": True,
        "allowlist": (ALLOWED,),
        "min_reserve_cents": 500,
        "auto_approve_max_cents": 10_000,
        "hard_per_transfer_cents": 500_000,
        "hard_daily_limit_cents": 1_000_000,
    }
    values.update(overrides)
    return PolicySettings(**values)


def test_small_allowlisted_transfer_with_reserve_auto_approves() -> None:
    result = evaluate(5_000, ALLOWED, 0, _settings(), balance_cents=100_000)

    assert result.decision is PolicyDecision.AUTO_APPROVE
    assert result.reasons == (reason_codes.WITHIN_AUTO_APPROVE_LIMIT,)
    assert result.allowlist_matched is True
    assert result.projected_balance_cents == 95_000
    assert result.projected_spent_last_24h_cents == 5_000


def test_amount_above_auto_approve_ceiling_requires_approval() -> None:
    result = evaluate(150_000, ALLOWED, 0, _settings(), balance_cents=10_000_000)

    assert result.decision is PolicyDecision.REQUIRE_APPROVAL
    assert result.reasons == (reason_codes.ABOVE_AUTO_APPROVE_THRESHOLD,)


def test_above_hard_per_transfer_cap_rejects() -> None:
    result = evaluate(500_001, ALLOWED, 0, _settings(), balance_cents=10_000_000)

    assert result.decision is PolicyDecision.REJECT
    assert reason_codes.ABOVE_HARD_PER_TRANSFER_LIMIT in result.reasons


def test_daily_cap_counts_recent_spend() -> None:
    settings = _settings(hard_daily_limit_cents=20_000)

    within = evaluate(5_000, ALLOWED, 15_000, settings, balance_cents=100_000)
    over = evaluate(5_001, ALLOWED, 15_000, settings, balance_cents=100_000)

    assert within.decision is PolicyDecision.AUTO_APPROVE
    assert over.decision is PolicyDecision.REJECT
    assert over.reasons[0] == reason_codes.ABOVE_HARD_DAILY_LIMIT


def test_unknown_recipient_requires_approval_case_insensitively() -> None:
    upper = "0x" + "A1" * 20

    matched = evaluate(100, upper, 0, _settings(), balance_cents=100_000)
    stranger = evaluate(100, STRANGER, 0, _settings(), balance_cents=100_000)

    assert matched.decision is PolicyDecision.AUTO_APPROVE
    assert stranger.decision is PolicyDecision.REQUIRE_APPROVAL
    assert stranger.reasons == (reason_codes.RECIPIENT_NOT_ALLOWLISTED,)


def test_allowlist_not_required_accepts_any_recipient() -> None:
    result = evaluate(100, STRANGER, 0, _settings(require_allowlist=False), balance_cents=100_000)

    assert result.decision is PolicyDecision.AUTO_APPROVE
    assert result.allowlist_matched is False


def test_reserve_floor_and_unknown_balance_force_approval() -> None:
    below = evaluate(1_000, ALLOWED, 0, _settings(), balance_cents=1_400)
    unknown = evaluate(1_000, ALLOWED, 0, _settings(), balance_cents=None)

    assert below.decision is PolicyDecision.REQUIRE_APPROVAL
    assert below.reasons == (reason_codes.BELOW_MIN_RESERVE,)
    assert unknown.decision is PolicyDecision.REQUIRE_APPROVAL
    assert unknown.reasons == (reason_codes.BALANCE_UNKNOWN,)
    assert unknown.projected_balance_cents is None


def test_most_severe_outcome_wins_and_all_reasons_are_kept() -> None:
    result = evaluate(600_000, STRANGER, 0, _settings(), balance_cents=100)

    assert result.decision is PolicyDecision.REJECT
    assert result.reasons[:3] == (
        reason_codes.ABOVE_HARD_PER_TRANSFER_LIMIT,
        reason_codes.RECIPIENT_NOT_ALLOWLISTED,
        reason_codes.BELOW_MIN_RESERVE,
    )


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amount_rejects(amount: int) -> None:
    result = evaluate(amount, ALLOWED, 0, _settings(), balance_cents=100_000)

    assert result.decision is PolicyDecision.REJECT
    assert result.reasons[0] == reason_codes.NON_POSITIVE_AMOUNT


def test_evaluate_is_deterministic() -> None:
    settings = _settings()
    first = evaluate(12_345, STRANGER, 4_000, settings, balance_cents=50_000)

    for _ in range(5):
        assert evaluate(12_345, STRANGER, 4_000, settings, balance_cents=50_000) == first
