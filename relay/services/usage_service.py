"""Per-tenant, per-day token and cost accounting for model calls."""

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from relay.config import Settings
from relay.logging_config import get_logger
from relay.models import AIUsage
from relay.services.llm.base import LLMResponse

logger = get_logger("usage_service")

CHARS_PER_TOKEN = 4
FALLBACK_TIER = 1


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def calculate_cost(settings: Settings, tier: int, input_tokens: int, output_tokens: int) -> float:
    """USD cost; rates are per million tokens."""
    input_rate, output_rate = settings.rates_for_tier(tier)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


@dataclass
class UsageEntry:
    model: str
    tier: int
    input_tokens: int
    output_tokens: int
    cost: float


class UsageRecorder:
    """Collects model calls during one turn; ``flush`` writes them after the turn commits.

    Writing after the turn keeps a usage-row conflict from rolling back
    conversation data.
    """

    def __init__(self, tenant_id: UUID, settings: Settings):
        self.tenant_id = tenant_id
        self.settings = settings
        self.entries: list[UsageEntry] = []

    def record(
        self,
        *,
        model: str,
        tier: int,
        prompt_text: str = "",
        completion_text: str = "",
        response: Optional[LLMResponse] = None,
    ) -> UsageEntry:
        input_tokens = response.input_tokens if response else None
        output_tokens = response.output_tokens if response else None
        if input_tokens is None:
            input_tokens = estimate_tokens(prompt_text)
        if output_tokens is None:
            output_tokens = estimate_tokens(completion_text)
        entry = UsageEntry(
            model=model,
            tier=tier,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            cost=calculate_cost(self.settings, tier, int(input_tokens), int(output_tokens)),
        )
        self.entries.append(entry)
        return entry

    @property
    def total_cost(self) -> float:
        return sum(entry.cost for entry in self.entries)

    def flush(self, db: Session, day: Optional[date] = None) -> int:
        day = day or datetime.now(timezone.utc).date()
        written = 0
        for entry in self.entries:
            try:
                add_usage(db, self.tenant_id, day, entry)
                db.commit()
                written += 1
            except IntegrityError:
                # Another worker created the bucket first; retry as an update.
                db.rollback()
                try:
                    add_usage(db, self.tenant_id, day, entry)
                    db.commit()
                    written += 1
                except Exception as e:
                    db.rollback()
                    logger.error(
                        "AI usage write failed",
                        extra={"context": {"tenant_id": str(self.tenant_id), "model": entry.model, "error": str(e)}},
                    )
            except Exception as e:
                db.rollback()
                logger.error(
                    "AI usage write failed",
                    extra={"context": {"tenant_id": str(self.tenant_id), "model": entry.model, "error": str(e)}},
                )
        self.entries.clear()
        return written


def add_usage(db: Session, tenant_id: UUID, day: date, entry: UsageEntry) -> None:
    """Add one call to its daily bucket.

    The increment runs as one UPDATE so concurrent workers never overwrite
    each other's totals. A bucket created concurrently surfaces as an
    IntegrityError on flush, which ``UsageRecorder.flush`` retries.
    """
    bucket_filter = (
        AIUsage.tenant_id == tenant_id,
        AIUsage.day == day,
        AIUsage.model == entry.model,
        AIUsage.tier == entry.tier,
    )
    if db.query(AIUsage.id).filter(*bucket_filter).first() is None:
        db.add(
            AIUsage(
                tenant_id=tenant_id,
                day=day,
                model=entry.model,
                tier=entry.tier,
                input_tokens=0,
                output_tokens=0,
                request_count=0,
                cost=0.0,
            )
        )
        db.flush()
    db.execute(
        update(AIUsage)
        .where(*bucket_filter)
        .values(
            input_tokens=AIUsage.input_tokens + entry.input_tokens,
            output_tokens=AIUsage.output_tokens + entry.output_tokens,
            request_count=AIUsage.request_count + 1,
            cost=AIUsage.cost + entry.cost,
        )
        .execution_options(synchronize_session=False)
    )


def daily_cost(db: Session, tenant_id: UUID, day: date) -> float:
    rows = db.query(AIUsage).filter(AIUsage.tenant_id == tenant_id, AIUsage.day == day).all()
    return sum(row.cost or 0.0 for row in rows)
