"""
Shared fixtures: in-memory SQLite database and row builders.
No network calls; every test gets a fresh schema.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import BlacklistRule, ContentTypeRule, DomainCache, Rating, UrlStats
from app.urls import extract_domain, hash_url, normalize_url

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def url_key(raw_url: str) -> tuple[str, str, str]:
    """(normalized url, url hash, domain) for a raw URL."""
    url = normalize_url(raw_url)
    return url, hash_url(url), extract_domain(url)


def insert_stats(db, raw_url: str, **kwargs) -> UrlStats:
    """Insert a UrlStats row directly, bypassing the aggregator."""
    url, url_hash, domain = url_key(raw_url)
    defaults = {
        "url_hash": url_hash,
        "url": url,
        "domain": domain,
        "rating_count": 0,
        "processing_status": "community_only",
    }
    defaults.update(kwargs)
    stats = UrlStats(**defaults)
    db.add(stats)
    db.commit()
    return stats


def insert_rating(db, raw_url: str, user: str = "user-1", rating: int = 5, **kwargs) -> Rating:
    """Insert a Rating directly, bypassing the dedup logic."""
    _, url_hash, _ = url_key(raw_url)
    created_at = kwargs.pop("created_at", NOW)
    defaults = {
        "url_hash": url_hash,
        "user_id_hash": user,
        "rating": rating,
        "created_at": created_at,
        "updated_at": created_at,
        "processed": False,
    }
    defaults.update(kwargs)
    row = Rating(**defaults)
    db.add(row)
    db.commit()
    return row


def insert_cache(db, domain: str, expires_in: timedelta = timedelta(days=7), now: datetime = NOW, **kwargs) -> DomainCache:
    defaults = {
        "domain": domain,
        "domain_age_days": None,
        "http_status": 200,
        "ssl_valid": True,
        "threat_verdicts": {},
        "threat_score": None,
        "last_checked": now,
        "cache_expires_at": now + expires_in,
    }
    defaults.update(kwargs)
    entry = DomainCache(**defaults)
    db.add(entry)
    db.commit()
    return entry


def insert_blacklist(db, pattern: str, severity: int = 5, **kwargs) -> BlacklistRule:
    defaults = {"domain_pattern": pattern, "blacklist_type": "phishing", "severity": severity, "source": "manual"}
    defaults.update(kwargs)
    rule = BlacklistRule(**defaults)
    db.add(rule)
    db.commit()
    return rule


def insert_content_rule(db, domain: str, content_type: str = "article", **kwargs) -> ContentTypeRule:
    defaults = {
        "domain": domain,
        "content_type": content_type,
        "url_pattern": None,
        "trust_score_modifier": 0,
        "min_ratings_required": 3,
    }
    defaults.update(kwargs)
    rule = ContentTypeRule(**defaults)
    db.add(rule)
    db.commit()
    return rule
