"""
Plan-quota gate — how many new leads a brand may still admit this month.

Policy is truncate, don't reject: when N leads arrive and only K fit, the
first K (arrival order) are kept and the rest are dropped with an info log.
The gate runs per account sub-batch, not per lead: an unlocked pre-check
before enrichment, then a locked re-check right before the insert.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence, TypeVar

from sqlalchemy import select, update, func

from app.models.brand import Brand
from app.models.lead import LeadRecord

logger = logging.getLogger('services.quota')

T = TypeVar('T')


@dataclass(frozen=True)
class QuotaDecision:
    brand_id: int
    candidates: int
    admitted: int

    @property
    def dropped(self) -> int:
        return self.candidates - self.admitted


def admissible_count(used: int, cap: int, candidates: int) -> int:
    """min(candidates, max(0, cap - used))."""
    remaining = max(0, (cap or 0) - (used or 0))
    return max(0, min(candidates, remaining))


def is_trial_expired(brand: Brand, now: datetime = None) -> bool:
    if brand.subscription_plan != 'trial' or brand.trial_ends_at is None:
        return False
    now = now or datetime.now()
    ends = brand.trial_ends_at
    if ends.tzinfo is not None and now.tzinfo is None:
        ends = ends.replace(tzinfo=None)
    return ends < now


def evaluate(session, brand_id: int, candidates: int, now: datetime = None,
             lock: bool = False) -> QuotaDecision:
    """
    Read the brand's usage once and decide how many candidates fit.

    With lock=True the brand row is read FOR UPDATE (Postgres) so concurrent
    flushes for the same brand serialize on it until the caller commits. Take
    the lock only right before the write it guards, never across network I/O.
    """
    stmt = select(Brand).where(Brand.id == brand_id)
    if lock:
        stmt = stmt.with_for_update()
    brand = session.execute(stmt).scalar_one_or_none()

    if brand is None:
        logger.error("Brand %s not found — admitting 0/%d leads", brand_id, candidates,
                     extra={'brand_id': brand_id})
        return QuotaDecision(brand_id, candidates, 0)

    if is_trial_expired(brand, now):
        logger.info("Trial expired for brand %s — dropping %d leads", brand_id, candidates,
                    extra={'brand_id': brand_id})
        return QuotaDecision(brand_id, candidates, 0)

    admitted = admissible_count(brand.leads_used_this_month, brand.max_leads_per_month, candidates)
    if admitted < candidates:
        logger.info(
            "Plan limit reached for brand %s (%d/%d used) — admitting %d/%d leads",
            brand_id, brand.leads_used_this_month, brand.max_leads_per_month, admitted, candidates,
            extra={'brand_id': brand_id},
        )
    return QuotaDecision(brand_id, candidates, admitted)


def truncate(items: Sequence[T], decision: QuotaDecision) -> List[T]:
    """Keep the first `decision.admitted` items in arrival order."""
    return list(items[:decision.admitted])


def increment_usage(session, brand_id: int, count: int) -> None:
    """Atomic counter bump; does not commit."""
    if count <= 0:
        return
    session.execute(
        update(Brand)
        .where(Brand.id == brand_id)
        .values(leads_used_this_month=Brand.leads_used_this_month + count)
        .execution_options(synchronize_session=False)
    )


def reset_monthly_usage(session, brand_id: int = None) -> int:
    """Zero the monthly counter for one brand, or all brands. Returns rows touched."""
    stmt = update(Brand).values(leads_used_this_month=0).execution_options(synchronize_session=False)
    if brand_id is not None:
        stmt = stmt.where(Brand.id == brand_id)
    return session.execute(stmt).rowcount


def sync_usage_count(session, brand_id: int, now: datetime = None) -> int:
    """Recompute leads_used_this_month from the leads created this calendar month."""
    now = now or datetime.now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    count = session.execute(
        select(func.count(LeadRecord.id))
        .where(LeadRecord.brand_id == brand_id, LeadRecord.created_at >= month_start)
    ).scalar_one()
    session.execute(
        update(Brand)
        .where(Brand.id == brand_id)
        .values(leads_used_this_month=count)
        .execution_options(synchronize_session=False)
    )
    return count
