import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import cache
from app.batch import enqueue_analysis
from app.config import ScoringConfig, scoring_config
from app.database import as_utc, utcnow
from app.models import Rating, UrlStats
from app.schemas import Priority, ProcessingStatus
from app.urls import extract_domain, hash_url, normalize_url

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"

MESSAGES = {
    CREATED: "Rating submitted successfully!",
    UPDATED: "Rating updated successfully!",
}


class RatingStoreError(Exception):
    """The rating could not be stored; nothing from the submission was written."""


@dataclass
class RatingFlags:
    is_spam: bool = False
    is_misleading: bool = False
    is_scam: bool = False


@dataclass
class SubmissionResult:
    outcome: str              # CREATED or UPDATED
    rating: Rating
    url: str
    url_hash: str
    domain: str
    analysis_requested: bool

    @property
    def message(self) -> str:
        return MESSAGES[self.outcome]


def _upsert_stats_stub(db: Session, url_hash: str, url: str, domain: str) -> UrlStats:
    """Make sure the aggregate row exists with its domain filled in; scores are left to the aggregator."""
    stats = db.get(UrlStats, url_hash)
    if stats is None:
        stats = UrlStats(
            url_hash=url_hash,
            url=url,
            domain=domain,
            rating_count=0,
            processing_status=ProcessingStatus.COMMUNITY_ONLY.value,
        )
        db.add(stats)
    else:
        stats.url = url
        stats.domain = domain
    return stats


def submit_rating(
    db: Session,
    raw_url: str,
    user_id_hash: str,
    score: int,
    flags: RatingFlags = None,
    comment: Optional[str] = None,
    config: ScoringConfig = None,
    now: datetime = None,
) -> SubmissionResult:
    """
    Store one user's rating for a URL.

    A repeat submission from the same user within the dedup window overwrites the
    earlier rating and marks it unprocessed again; outside the window a new row is
    created and the old one is left for the retention sweeper.

    Raises:
        InvalidUrlError: the URL cannot be normalized
        ValueError: the score is outside 1-5
        RatingStoreError: the store write failed; the whole submission was rolled back
    """
    if not 1 <= score <= 5:
        raise ValueError(f"Rating must be between 1 and 5, got {score}")

    config = config or scoring_config
    flags = flags or RatingFlags()
    now = now or utcnow()

    url = normalize_url(raw_url)
    url_hash = hash_url(url)
    domain = extract_domain(url)
    window = timedelta(hours=config.retention.dedup_window_hours)

    try:
        existing = (
            db.query(Rating)
            .filter(Rating.url_hash == url_hash, Rating.user_id_hash == user_id_hash)
            .order_by(Rating.created_at.desc(), Rating.id.desc())
            .first()
        )

        if existing is not None and now - as_utc(existing.created_at) < window:
            existing.rating = score
            existing.is_spam = flags.is_spam
            existing.is_misleading = flags.is_misleading
            existing.is_scam = flags.is_scam
            existing.comment = comment
            existing.processed = False
            existing.updated_at = now
            rating, outcome = existing, UPDATED
        else:
            rating = Rating(
                url_hash=url_hash,
                user_id_hash=user_id_hash,
                rating=score,
                is_spam=flags.is_spam,
                is_misleading=flags.is_misleading,
                is_scam=flags.is_scam,
                comment=comment,
                created_at=now,
                updated_at=now,
                processed=False,
            )
            db.add(rating)
            outcome = CREATED

        _upsert_stats_stub(db, url_hash, url, domain)

        analysis_requested = cache.get_entry(db, domain) is None
        if analysis_requested:
            enqueue_analysis(db, domain, Priority.HIGH)

        db.commit()
        db.refresh(rating)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store rating for {url_hash}: {e}")
        raise RatingStoreError(f"Failed to submit rating: {e}") from e

    logger.info(f"[{domain}] Rating {outcome} for {url_hash[:12]} (score={score}, analysis_requested={analysis_requested})")
    return SubmissionResult(
        outcome=outcome,
        rating=rating,
        url=url,
        url_hash=url_hash,
        domain=domain,
        analysis_requested=analysis_requested,
    )
