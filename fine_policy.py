from datetime import date
from decimal import Decimal

from config import CirculationPolicy
from models import money


def overdue_days(due_date: date, on_date: date) -> int:
    """Whole days past the due date, zero when not late."""
    return max(0, (on_date - due_date).days)


def compute_fine(days_overdue: int, policy: CirculationPolicy) -> Decimal:
    """
    Fine for a loan returned `days_overdue` days late.

    Linear accrual at `fine_per_day` after `fine_grace_days`, capped at
    `fine_cap` when one is configured.
    """
    chargeable = max(0, days_overdue - policy.fine_grace_days)
    fine = Decimal(chargeable) * policy.fine_per_day
    if policy.fine_cap is not None:
        fine = min(fine, policy.fine_cap)
    return money(fine)
