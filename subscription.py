import datetime as dt
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Resume, UserSubscription
from settings import FREE_RESUME_LIMIT


class ResumeQuota(BaseModel):
    allowed: bool
    current: int
    limit: Optional[int]  # None = unbounded


def utcnow() -> dt.datetime:
    # Naive UTC, matching what SQLAlchemy hands back for DateTime columns
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def get_subscription(db: Session, user_id: str) -> Optional[UserSubscription]:
    return (
        db.query(UserSubscription)
        .filter(UserSubscription.user_id == user_id)
        .first()
    )


def is_premium_user(db: Session, user_id: str, now: Optional[dt.datetime] = None) -> bool:
    """
    Point-in-time check: premium while the paid period has not ended and the
    subscription is not set to cancel at period end. Callers re-check at every
    decision point since the answer can lapse between calls.
    """
    subscription = get_subscription(db, user_id)
    if not subscription:
        return False

    now = now or utcnow()
    return (
        subscription.stripe_current_period_end > now
        and not subscription.stripe_cancel_at_period_end
    )


def count_resumes(db: Session, user_id: str) -> int:
    return (
        db.query(func.count(Resume.id))
        .filter(Resume.user_id == user_id)
        .scalar()
        or 0
    )


def can_create_resume(db: Session, user_id: str) -> ResumeQuota:
    """
    Free users may hold up to FREE_RESUME_LIMIT resumes; premium users are unbounded.

    For premium users the count is skipped and ``current`` is reported as 0.
    Not atomic with the subsequent insert: two concurrent creates from the same
    free user can both pass the check.
    """
    if is_premium_user(db, user_id):
        return ResumeQuota(allowed=True, current=0, limit=None)

    current = count_resumes(db, user_id)
    return ResumeQuota(
        allowed=current < FREE_RESUME_LIMIT,
        current=current,
        limit=FREE_RESUME_LIMIT,
    )
