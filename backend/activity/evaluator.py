"""
Inactivity evaluation.

Pure arithmetic on timestamps; nothing here touches the request, the
session or the cache.
"""
from collections import namedtuple

ExpiryDecision = namedtuple('ExpiryDecision', ['expired', 'remaining_seconds', 'elapsed_seconds'])


def evaluate(now, last_activity_at, budget_minutes):
    """
    Decide whether a session idle since ``last_activity_at`` has exceeded
    ``budget_minutes`` at ``now``.

    Expiry uses a strict comparison: being idle for exactly the budget is
    still allowed. Timestamps in the future (client clock ahead of ours)
    count as zero idle time, so ``remaining_seconds`` never exceeds the budget.
    """
    budget_seconds = int(budget_minutes) * 60
    elapsed = max(0.0, (now - last_activity_at).total_seconds())
    return ExpiryDecision(
        expired=elapsed > budget_seconds,
        remaining_seconds=max(0, int(budget_seconds - elapsed)),
        elapsed_seconds=int(elapsed),
    )
