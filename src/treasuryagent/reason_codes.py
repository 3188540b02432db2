"""Stable reason codes attached to policy decisions."""

NON_POSITIVE_AMOUNT = "non_positive_amount"
ABOVE_HARD_PER_TRANSFER_LIMIT = "above_hard_per_transfer_limit"
ABOVE_HARD_DAILY_LIMIT = "above_hard_daily_limit"
RECIPIENT_NOT_ALLOWLISTED = "recipient_not_allowlisted"
BELOW_MIN_RESERVE = "below_min_reserve"
BALANCE_UNKNOWN = "balance_unknown"
WITHIN_AUTO_APPROVE_LIMIT = "within_auto_approve_limit"
ABOVE_AUTO_APPROVE_THRESHOLD = "above_auto_approve_threshold"

ALL_REASON_CODES = (
    NON_POSITIVE_AMOUNT,
    ABOVE_HARD_PER_TRANSFER_LIMIT,
    ABOVE_HARD_DAILY_LIMIT,
    RECIPIENT_NOT_ALLOWLISTED,
    BELOW_MIN_RESERVE,
    BALANCE_UNKNOWN,
    WITHIN_AUTO_APPROVE_LIMIT,
    ABOVE_AUTO_APPROVE_THRESHOLD,
)
