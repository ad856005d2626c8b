"""Destination number -> tenant lookup with positive and negative caching."""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from relay.logging_config import get_logger
from relay.models import FAQ, Tenant
from relay.services.phone import normalize_phone

logger = get_logger("tenant_resolver")


@dataclass(frozen=True)
class FAQEntry:
    id: UUID
    question: str
    answer: str
    category: Optional[str] = None
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class TenantProfile:
    """Read-only snapshot of the tenant configuration the pipeline needs.

    Snapshots outlive the session that loaded them, so the cache never holds
    ORM instances.
    """

    id: UUID
    name: str
    whatsapp_number: str
    business_type: Optional[str] = None
    timezone: str = "Europe/Paris"
    services: tuple[str, ...] = ()
    assignment_strategy: str = "manual"
    auto_assign_enabled: bool = False
    faqs: tuple[FAQEntry, ...] = field(default_factory=tuple)

    @property
    def auto_assigns(self) -> bool:
        return self.auto_assign_enabled and self.assignment_strategy != "manual"


def load_tenant_profile(db: Session, canonical_phone: str) -> Optional[TenantProfile]:
    """Backing lookup: match ``+<digits>`` or bare ``<digits>`` as stored."""
    candidates = [canonical_phone, canonical_phone.lstrip("+")]
    tenant = (
        db.query(Tenant)
        .filter(Tenant.whatsapp_number.in_(candidates), Tenant.whatsapp_active.is_(True))
        .first()
    )
    if not tenant:
        return None

    faqs = (
        db.query(FAQ)
        .filter(FAQ.tenant_id == tenant.id, FAQ.is_active.is_(True))
        .order_by(FAQ.sort_order, FAQ.question)
        .all()
    )
    return TenantProfile(
        id=tenant.id,
        name=tenant.name,
        whatsapp_number=normalize_phone(tenant.whatsapp_number) or canonical_phone,
        business_type=tenant.business_type,
        timezone=tenant.timezone or "Europe/Paris",
        services=tuple(tenant.services or ()),
        assignment_strategy=tenant.assignment_strategy or "manual",
        auto_assign_enabled=bool(tenant.auto_assign_enabled),
        faqs=tuple(
            FAQEntry(
                id=faq.id,
                question=faq.question,
                answer=faq.answer,
                category=faq.category,
                keywords=tuple(faq.keywords or ()),
            )
            for faq in faqs
        ),
    )


class TenantResolver:
    """Read-through cache in front of ``load_tenant_profile``.

    Hits are kept for ``ttl_seconds`` and misses for ``negative_ttl_seconds``.
    The cache is capped at ``max_entries``; the oldest entry goes first.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        negative_ttl_seconds: float = 60,
        max_entries: int = 5000,
        loader: Callable[[Session, str], Optional[TenantProfile]] = load_tenant_profile,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.negative_ttl_seconds = negative_ttl_seconds
        self.max_entries = max_entries
        self._loader = loader
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[Optional[TenantProfile], float]]" = OrderedDict()
        self._lock = threading.Lock()

    def resolve(self, db: Session, destination_phone: str) -> Optional[TenantProfile]:
        canonical = normalize_phone(destination_phone)
        if not canonical:
            return None

        now = self._clock()
        with self._lock:
            cached = self._entries.get(canonical)
            if cached is not None:
                profile, expires_at = cached
                if now < expires_at:
                    return profile
                del self._entries[canonical]

        profile = self._loader(db, canonical)
        ttl = self.ttl_seconds if profile is not None else self.negative_ttl_seconds
        with self._lock:
            self._entries[canonical] = (profile, self._clock() + ttl)
            self._entries.move_to_end(canonical)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

        if profile is None:
            logger.debug("Tenant cache miss stored", extra={"context": {"phone": canonical}})
        return profile

    def invalidate(self, tenant_id: UUID) -> int:
        """Drop every entry for the tenant plus all negative entries.

        Negative entries go too: the tenant's new number may be one that was
        recently cached as unknown.
        """
        tenant_key = str(tenant_id)
        with self._lock:
            stale = [
                key
                for key, (profile, _) in self._entries.items()
                if profile is None or str(profile.id) == tenant_key
            ]
            for key in stale:
                del self._entries[key]
        logger.info("Tenant cache invalidated", extra={"context": {"tenant_id": tenant_key, "removed": len(stale)}})
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
