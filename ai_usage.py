import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import func
from sqlalchemy.orm import Session

from models import AiUsageLog
from settings import FREE_TIER_TOKEN_LIMIT
from subscription import is_premium_user, utcnow

FEATURE_TYPES = {"enhance", "recreate", "analyze", "portfolio"}


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class UsageSummary(BaseModel):
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    call_count: int


class UsageCheck(BaseModel):
    allowed: bool
    used: int
    limit: Optional[int]  # None = unbounded


def log_ai_usage(
    db: Session,
    user_id: str,
    usage: TokenUsage,
    feature_type: str,
    model_id: Optional[str] = None,
) -> AiUsageLog:
    if feature_type not in FEATURE_TYPES:
        raise ValueError(f"Unknown AI feature type: {feature_type}")

    row = AiUsageLog(
        user_id=user_id,
        feature_type=feature_type,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        model_id=model_id,
        created_at=utcnow(),
    )
    db.add(row)
    db.commit()
    return row


def current_period_start(now: Optional[dt.datetime] = None) -> dt.datetime:
    """Start of the current calendar month (UTC)."""
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_user_token_usage(db: Session, user_id: str, now: Optional[dt.datetime] = None) -> UsageSummary:
    row = (
        db.query(
            func.coalesce(func.sum(AiUsageLog.input_tokens), 0),
            func.coalesce(func.sum(AiUsageLog.output_tokens), 0),
            func.coalesce(func.sum(AiUsageLog.total_tokens), 0),
            func.count(AiUsageLog.id),
        )
        .filter(
            AiUsageLog.user_id == user_id,
            AiUsageLog.created_at >= current_period_start(now),
        )
        .one()
    )
    return UsageSummary(
        total_input_tokens=int(row[0]),
        total_output_tokens=int(row[1]),
        total_tokens=int(row[2]),
        call_count=int(row[3]),
    )


def check_ai_usage_limit(db: Session, user_id: str) -> UsageCheck:
    usage = get_user_token_usage(db, user_id)

    if is_premium_user(db, user_id):
        return UsageCheck(allowed=True, used=usage.total_tokens, limit=None)

    return UsageCheck(
        allowed=usage.total_tokens < FREE_TIER_TOKEN_LIMIT,
        used=usage.total_tokens,
        limit=FREE_TIER_TOKEN_LIMIT,
    )


class UsageInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    call_count: int
    limit: Optional[int]  # None = unbounded
    usage_percent: int


def get_ai_usage_info(db: Session, user_id: str) -> UsageInfo:
    """This month's usage for display, with the share of the free-tier budget spent."""
    usage = get_user_token_usage(db, user_id)

    if is_premium_user(db, user_id):
        limit, percent = None, 0
    else:
        limit = FREE_TIER_TOKEN_LIMIT
        percent = min(int(usage.total_tokens * 100 / limit + 0.5), 100)

    return UsageInfo(
        total_input_tokens=usage.total_input_tokens,
        total_output_tokens=usage.total_output_tokens,
        total_tokens=usage.total_tokens,
        call_count=usage.call_count,
        limit=limit,
        usage_percent=percent,
    )
