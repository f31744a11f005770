"""Quota ledger - per-user, per-day transformation counters against the plan limit"""
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timelens.core.config import settings
from timelens.core.errors import NotFoundError, QuotaExceeded
from timelens.core.logging import reconciliation_logger
from timelens.core.metrics import (
    quota_overage_counter, reconciliation_repairs_counter
)
from timelens.models.transform_result import TransformResult
from timelens.models.usage_counter import UsageCounter
from timelens.models.user import User
from timelens.services.plans import UNLIMITED, get_plan_limit, is_unlimited
from timelens.utils.dates import day_bounds, today_utc, utcnow

logger = logging.getLogger(__name__)


def _get_user(user_id: int, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def _unlimited_result() -> Dict[str, int]:
    return {"allowed": True, "remaining": UNLIMITED, "limit": UNLIMITED}


def get_usage_counter(user_id: int, db: Session, usage_date: Optional[date] = None) -> Optional[UsageCounter]:
    usage_date = usage_date or today_utc()
    return db.query(UsageCounter).filter(
        UsageCounter.user_id == user_id,
        UsageCounter.usage_date == usage_date
    ).first()


def get_or_create_usage_counter(
    user_id: int,
    plan_type: str,
    db: Session,
    usage_date: Optional[date] = None
) -> UsageCounter:
    """Get the user's counter for the day, creating it with a limit snapshot if absent.

    Creation commits the session. Callers holding pending changes they do not
    want committed must call this first.
    """
    usage_date = usage_date or today_utc()
    counter = get_usage_counter(user_id, db, usage_date)
    if counter:
        return counter

    counter = UsageCounter(
        user_id=user_id,
        usage_date=usage_date,
        transformations_count=0,
        daily_limit=get_plan_limit(plan_type),
        plan_type=plan_type
    )
    db.add(counter)
    try:
        db.commit()
    except IntegrityError:
        # Another request created today's row first
        db.rollback()
        counter = get_usage_counter(user_id, db, usage_date)
        if counter is None:
            raise
        return counter

    db.refresh(counter)
    logger.debug(f"Created usage counter for user {user_id} on {usage_date} (limit {counter.daily_limit})")
    return counter


def effective_limit(counter: UsageCounter, plan_type: str) -> int:
    """Limit that applies to a counter given the user's live plan.

    An unlimited live plan is always unlimited. Otherwise the snapshot taken at
    creation applies; a mid-day downgrade never lowers it, and a finite mid-day
    upgrade raises it only when QUOTA_HONOR_MIDDAY_UPGRADES is on.
    """
    live_limit = get_plan_limit(plan_type)
    snapshot = counter.daily_limit
    if live_limit == UNLIMITED or snapshot == UNLIMITED:
        return UNLIMITED
    if not settings.QUOTA_HONOR_MIDDAY_UPGRADES:
        return snapshot
    return max(snapshot, live_limit)


def can_transform(user_id: int, db: Session) -> Dict[str, int]:
    """Check whether the user may run another transformation today.

    Returns:
        dict with allowed, remaining and limit. Unlimited plans report -1 for both numbers.

    Raises:
        NotFoundError: If the user does not exist
    """
    user = _get_user(user_id, db)
    plan_type = user.current_plan

    if is_unlimited(plan_type):
        return _unlimited_result()

    counter = get_or_create_usage_counter(user.id, plan_type, db)
    limit = effective_limit(counter, plan_type)
    if limit == UNLIMITED:
        return _unlimited_result()

    remaining = max(0, limit - counter.transformations_count)
    return {"allowed": remaining > 0, "remaining": remaining, "limit": limit}


def commit_usage(user_id: int, db: Session, commit: bool = True) -> UsageCounter:
    """Record one successful transformation against today's counter.

    The increment is a single conditional UPDATE (count < limit) so concurrent
    requests can never push the counter past the limit. With commit=False the
    caller owns the transaction, which lets the orchestrator persist the result
    row and the usage in one commit.

    Raises:
        NotFoundError: If the user does not exist
        QuotaExceeded: If the limit was reached between the check and the commit
    """
    user = _get_user(user_id, db)
    plan_type = user.current_plan
    counter = get_or_create_usage_counter(user.id, plan_type, db)
    limit = effective_limit(counter, plan_type)

    query = db.query(UsageCounter).filter(UsageCounter.id == counter.id)
    if limit != UNLIMITED:
        query = query.filter(UsageCounter.transformations_count < limit)

    updated = query.update(
        {
            UsageCounter.transformations_count: UsageCounter.transformations_count + 1,
            UsageCounter.updated_at: utcnow()
        },
        synchronize_session=False
    )

    if not updated:
        logger.warning(f"Quota race lost for user {user_id}: counter already at limit {limit}")
        if commit:
            db.rollback()
        raise QuotaExceeded(remaining=0, limit=limit)

    if commit:
        db.commit()
    db.refresh(counter)
    return counter


def get_usage_stats(user_id: int, db: Session) -> Dict:
    """Today's usage, this month's total and average per active day, and lifetime total"""
    check = can_transform(user_id, db)
    today = today_utc()
    month_start = today.replace(day=1)

    today_counter = get_usage_counter(user_id, db, today)
    today_count = today_counter.transformations_count if today_counter else 0

    month_counters = db.query(UsageCounter).filter(
        UsageCounter.user_id == user_id,
        UsageCounter.usage_date >= month_start
    ).all()
    month_count = sum(c.transformations_count for c in month_counters)
    month_average = round(month_count / len(month_counters), 2) if month_counters else 0

    total = db.query(func.coalesce(func.sum(UsageCounter.transformations_count), 0)).filter(
        UsageCounter.user_id == user_id
    ).scalar()

    return {
        "today": {
            "count": today_count,
            "limit": check["limit"],
            "remaining": check["remaining"],
        },
        "this_month": {
            "count": month_count,
            "average": month_average,
        },
        "total": int(total or 0),
    }


def get_usage_history(user_id: int, db: Session, days: int = 30) -> List[Dict]:
    """Counters for the last N days, newest first"""
    since = today_utc() - timedelta(days=days - 1)
    counters = db.query(UsageCounter).filter(
        UsageCounter.user_id == user_id,
        UsageCounter.usage_date >= since
    ).order_by(UsageCounter.usage_date.desc()).all()

    return [
        {
            "date": c.usage_date.isoformat(),
            "count": c.transformations_count,
            "limit": c.daily_limit,
            "plan_type": c.plan_type,
        }
        for c in counters
    ]


def reset_usage(user_id: int, db: Session) -> UsageCounter:
    """Admin-only: zero today's counter for a user"""
    user = _get_user(user_id, db)
    counter = get_or_create_usage_counter(user.id, user.current_plan, db)
    previous = counter.transformations_count
    counter.transformations_count = 0
    db.commit()
    db.refresh(counter)
    logger.warning(f"Usage reset for user {user_id} on {counter.usage_date} (was {previous})")
    return counter


def get_usage_analytics(db: Session, start: Optional[date] = None, end: Optional[date] = None) -> Dict:
    """Aggregate usage across all users for an inclusive date range (defaults to the last 30 days)"""
    end = end or today_utc()
    start = start or (end - timedelta(days=30))

    counter_filter = (UsageCounter.usage_date >= start, UsageCounter.usage_date <= end)

    total_users = db.query(func.count(User.id)).scalar() or 0
    active_users = db.query(func.count(func.distinct(UsageCounter.user_id))).filter(
        *counter_filter, UsageCounter.transformations_count > 0
    ).scalar() or 0
    total_transformations = db.query(
        func.coalesce(func.sum(UsageCounter.transformations_count), 0)
    ).filter(*counter_filter).scalar() or 0

    plan_rows = db.query(User.current_plan, func.count(User.id)).group_by(User.current_plan).all()

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_users": int(total_users),
        "active_users": int(active_users),
        "total_transformations": int(total_transformations),
        "average_per_user": round(total_transformations / active_users, 2) if active_users else 0,
        "plan_distribution": {plan: count for plan, count in plan_rows},
    }


def reconcile_usage_counters(db: Session, usage_date: Optional[date] = None) -> Dict:
    """Raise counters that fall behind the results persisted on a day and report overages.

    Counters only ever move up here. A counter above its limit means the quota race
    was lost somewhere; it is reported, not corrected.
    """
    usage_date = usage_date or today_utc()
    start, end = day_bounds(usage_date)

    result_counts = db.query(TransformResult.user_id, func.count(TransformResult.id)).filter(
        TransformResult.created_at >= start,
        TransformResult.created_at < end
    ).group_by(TransformResult.user_id).all()

    repaired = 0
    for user_id, result_count in result_counts:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            continue
        counter = get_or_create_usage_counter(user.id, user.current_plan, db, usage_date)
        updated = db.query(UsageCounter).filter(
            UsageCounter.id == counter.id,
            UsageCounter.transformations_count < result_count
        ).update(
            {UsageCounter.transformations_count: result_count, UsageCounter.updated_at: utcnow()},
            synchronize_session=False
        )
        if updated:
            repaired += 1
            reconciliation_repairs_counter.inc()
            reconciliation_logger.warning(
                f"Usage counter for user {user_id} on {usage_date} raised to {result_count} to match results"
            )
    db.commit()

    candidates = db.query(UsageCounter, User.current_plan).join(
        User, User.id == UsageCounter.user_id
    ).filter(
        UsageCounter.usage_date == usage_date,
        UsageCounter.daily_limit != UNLIMITED,
        UsageCounter.transformations_count > UsageCounter.daily_limit
    ).all()
    over_limit = []
    for counter, plan_type in candidates:
        limit = effective_limit(counter, plan_type)
        if limit == UNLIMITED or counter.transformations_count <= limit:
            continue
        over_limit.append(counter)
        quota_overage_counter.inc()
        reconciliation_logger.error(
            f"User {counter.user_id} exceeded daily limit on {usage_date}: "
            f"{counter.transformations_count}/{counter.daily_limit}"
        )

    return {
        "date": usage_date.isoformat(),
        "checked": len(result_counts),
        "repaired": repaired,
        "over_limit": [counter.user_id for counter in over_limit],
    }
