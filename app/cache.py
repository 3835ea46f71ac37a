import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.config import ScoringConfig, scoring_config
from app.database import as_utc, utcnow
from app.models import DomainCache
from app.schemas import DomainSignals

logger = logging.getLogger(__name__)


def is_valid(entry: Optional[DomainCache], now: datetime = None) -> bool:
    """An entry is valid iff now < expiry. Compared once; callers keep the answer for the whole read."""
    if entry is None:
        return False
    return (now or utcnow()) < as_utc(entry.cache_expires_at)


def cache_status(entry: Optional[DomainCache], now: datetime = None) -> str:
    if entry is None:
        return "none"
    return "fresh" if is_valid(entry, now) else "expired"


def get_entry(db: Session, domain: Optional[str]) -> Optional[DomainCache]:
    if not domain:
        return None
    return db.get(DomainCache, domain)


def get_valid_signals(db: Session, domain: Optional[str], now: datetime = None) -> Optional[DomainSignals]:
    """Signals for the domain if a non-expired entry exists. Never triggers network I/O."""
    entry = get_entry(db, domain)
    if not is_valid(entry, now):
        return None
    return to_signals(entry)


def to_signals(entry: DomainCache) -> DomainSignals:
    return DomainSignals(
        domain=entry.domain,
        domain_age_days=entry.domain_age_days,
        age_source=entry.age_source,
        http_status=entry.http_status or 0,
        ssl_valid=bool(entry.ssl_valid),
        threat_verdicts=entry.threat_verdicts or {},
        threat_score=entry.threat_score,
    )


def upsert_signals(db: Session, signals: DomainSignals, config: ScoringConfig = None, now: datetime = None) -> DomainCache:
    """
    Write a fresh snapshot for the domain. Keyed by domain, so repeating the call is harmless.
    The caller commits.
    """
    config = config or scoring_config
    checked = now or utcnow()
    entry = DomainCache(
        domain=signals.domain,
        domain_age_days=signals.domain_age_days,
        age_source=signals.age_source,
        http_status=signals.http_status,
        ssl_valid=signals.ssl_valid,
        threat_verdicts={provider: verdict.value for provider, verdict in signals.threat_verdicts.items()},
        threat_score=signals.threat_score,
        last_checked=checked,
        cache_expires_at=checked + timedelta(days=config.cache.domain_cache_days),
    )
    # merge() performs an upsert: inserts if new, updates if the domain already exists
    return db.merge(entry)


def purge_expired(db: Session, grace_days: int, now: datetime = None) -> int:
    """Delete entries that expired more than grace_days ago. The caller commits."""
    cutoff = (now or utcnow()) - timedelta(days=grace_days)
    return (
        db.query(DomainCache)
        .filter(DomainCache.cache_expires_at < cutoff)
        .delete(synchronize_session=False)
    )
