import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import cache
from app.models import UrlStats
from app.rules import match_blacklist
from app.schemas import UrlStatsResponse
from app.scoring import TrustScoreCalculator, calculator as default_calculator
from app.urls import extract_domain, hash_url, normalize_url

logger = logging.getLogger(__name__)


def _from_row(stats: UrlStats, url: str, data_source: str, cache_status: str) -> UrlStatsResponse:
    return UrlStatsResponse(
        url=url,
        domain=stats.domain,
        trust_score=stats.trust_score,
        final_trust_score=stats.final_trust_score,
        domain_trust_score=stats.domain_trust_score,
        community_trust_score=stats.community_trust_score,
        content_type=stats.content_type or "unknown",
        rating_count=stats.rating_count or 0,
        average_rating=stats.average_rating,
        spam_reports_count=stats.spam_reports_count or 0,
        misleading_reports_count=stats.misleading_reports_count or 0,
        scam_reports_count=stats.scam_reports_count or 0,
        last_updated=stats.last_updated,
        data_source=data_source,
        cache_status=cache_status,
    )


def baseline_stats(
    url: str,
    domain: str,
    db: Optional[Session] = None,
    calculator: TrustScoreCalculator = None,
) -> UrlStatsResponse:
    """
    Domain-only score for a URL nobody has rated yet.
    Uses the cache and blacklist when they can be read, otherwise the baseline table alone.
    """
    calculator = calculator or default_calculator
    signals, blacklist_rule, status = None, None, "none"
    if db is not None:
        try:
            entry = cache.get_entry(db, domain)
            status = cache.cache_status(entry)
            if status == "fresh":
                signals = cache.to_signals(entry)
            blacklist_rule = match_blacklist(db, domain)
        except SQLAlchemyError as e:
            logger.error(f"[url-stats] Could not read domain data for {domain}: {e}")
            signals, blacklist_rule, status = None, None, "none"

    score, _, _ = calculator.domain_component(domain, signals, blacklist_rule)
    return UrlStatsResponse(
        url=url,
        domain=domain,
        trust_score=score,
        final_trust_score=score,
        domain_trust_score=score,
        community_trust_score=None,
        content_type="unknown",
        rating_count=0,
        data_source="baseline",
        cache_status=status,
    )


def lookup_url_stats(db: Session, raw_url: str, calculator: TrustScoreCalculator = None) -> UrlStatsResponse:
    """
    Stats for a URL: its own aggregate if it has ratings, else the most-rated URL on
    the same domain, else the domain baseline. Store errors fall through to the baseline.

    Raises:
        InvalidUrlError: the URL is malformed
    """
    url = normalize_url(raw_url)
    url_hash = hash_url(url)
    domain = extract_domain(url)

    try:
        status = cache.cache_status(cache.get_entry(db, domain))

        stats = db.get(UrlStats, url_hash)
        if stats is not None and (stats.rating_count or 0) > 0:
            return _from_row(stats, url, "url", status)

        domain_stats = (
            db.query(UrlStats)
            .filter(UrlStats.domain == domain, UrlStats.rating_count > 0)
            .order_by(UrlStats.rating_count.desc(), UrlStats.url_hash)
            .first()
        )
        if domain_stats is not None:
            return _from_row(domain_stats, url, "domain", status)
    except SQLAlchemyError as e:
        logger.error(f"[url-stats] Falling back to baseline for {url_hash[:12]}: {e}")
        db.rollback()
        return baseline_stats(url, domain, None, calculator)

    return baseline_stats(url, domain, db, calculator)
