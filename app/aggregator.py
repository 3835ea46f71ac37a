import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app import cache
from app.database import utcnow
from app.models import Rating, UrlStats
from app.rules import match_blacklist, match_content_rule
from app.schemas import (
    CommunityRatings,
    InvalidStatusTransition,
    ProcessingStatus,
)
from app.scoring import TrustScoreCalculator, calculator as default_calculator

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    processed_urls: int = 0
    failed_urls: List[str] = field(default_factory=list)

    def summary(self) -> dict:
        return {"processed_urls": self.processed_urls, "failed_urls": len(self.failed_urls)}


def derive_status(domain: Optional[str], has_valid_cache: bool) -> ProcessingStatus:
    if not domain or domain == "unknown":
        return ProcessingStatus.COMMUNITY_ONLY
    if has_valid_cache:
        return ProcessingStatus.ENHANCED_WITH_DOMAIN_ANALYSIS
    return ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN


def next_status(current: Optional[str], target: ProcessingStatus) -> ProcessingStatus:
    current_status = ProcessingStatus(current) if current else ProcessingStatus.COMMUNITY_ONLY
    if not current_status.can_transition_to(target):
        raise InvalidStatusTransition(current_status, target)
    return target


def collect_community(stats: UrlStats, ratings: List[Rating]) -> CommunityRatings:
    """Live ratings plus the history the retention sweeper has already folded into the row."""
    count = stats.archived_rating_count + len(ratings)
    total = stats.archived_rating_sum + sum(r.rating for r in ratings)
    return CommunityRatings(
        rating_count=count,
        average_rating=round(total / count, 2) if count else 0.0,
        spam_count=stats.archived_spam_count + sum(1 for r in ratings if r.is_spam),
        misleading_count=stats.archived_misleading_count + sum(1 for r in ratings if r.is_misleading),
        scam_count=stats.archived_scam_count + sum(1 for r in ratings if r.is_scam),
    )


class Aggregator:
    """
    Recomputes UrlStats for every URL that has unprocessed ratings.

    Each URL is its own transaction: a failure rolls back that URL only, its ratings
    stay unprocessed, and the next run picks it up again.
    """

    def __init__(self, db_factory: Callable[[], Session], calculator: TrustScoreCalculator = None):
        self.db_factory = db_factory
        self.calculator = calculator or default_calculator

    def pending_urls(self, db: Session) -> List[str]:
        rows = (
            db.query(Rating.url_hash)
            .filter(Rating.processed == False)
            .group_by(Rating.url_hash)
            .order_by(func.min(Rating.created_at))
            .all()
        )
        return [url_hash for (url_hash,) in rows]

    def run(self) -> AggregationResult:
        result = AggregationResult()

        db = self.db_factory()
        try:
            url_hashes = self.pending_urls(db)
        finally:
            db.close()

        if not url_hashes:
            logger.info("[aggregate] No unprocessed ratings")
            return result

        logger.info(f"[aggregate] Recomputing {len(url_hashes)} URLs")
        for url_hash in url_hashes:
            db = self.db_factory()
            try:
                self.process_url(db, url_hash)
                db.commit()
                result.processed_urls += 1
            except Exception as e:
                db.rollback()
                logger.error(f"[aggregate] Failed to aggregate {url_hash[:12]}: {e}")
                result.failed_urls.append(url_hash)
            finally:
                db.close()

        logger.info(f"[aggregate] Completed: {result.summary()}")
        return result

    def process_url(self, db: Session, url_hash: str, now: datetime = None) -> UrlStats:
        """Recompute one URL's aggregate and mark the ratings it was built from as processed. The caller commits."""
        snapshot = now or utcnow()

        # Row lock serializes concurrent runs on the same URL where the backend supports it
        stats = (
            db.query(UrlStats)
            .filter(UrlStats.url_hash == url_hash)
            .with_for_update()
            .one_or_none()
        )
        if stats is None:
            stats = UrlStats(
                url_hash=url_hash,
                rating_count=0,
                archived_rating_count=0,
                archived_rating_sum=0,
                archived_spam_count=0,
                archived_misleading_count=0,
                archived_scam_count=0,
                processing_status=ProcessingStatus.COMMUNITY_ONLY.value,
            )
            db.add(stats)
            db.flush()

        ratings = db.query(Rating).filter(Rating.url_hash == url_hash).all()
        community = collect_community(stats, ratings)
        if community.rating_count == 0:
            raise ValueError(f"No ratings found for {url_hash}")

        # Expiry is compared once here; the same answer drives status and scoring
        signals = cache.get_valid_signals(db, stats.domain, snapshot)
        status = next_status(stats.processing_status, derive_status(stats.domain, signals is not None))

        content_rule = match_content_rule(db, stats.url, stats.domain)
        blacklist_rule = match_blacklist(db, stats.domain)
        breakdown = self.calculator.compute(stats.domain, signals, community, content_rule, blacklist_rule)

        values = {
            "trust_score": breakdown.final_score,
            "final_trust_score": breakdown.final_score,
            "domain_trust_score": breakdown.domain_score,
            "community_trust_score": breakdown.community_score,
            "content_type": breakdown.content_type or "general",
            "rating_count": community.rating_count,
            "average_rating": community.average_rating,
            "spam_reports_count": community.spam_count,
            "misleading_reports_count": community.misleading_count,
            "scam_reports_count": community.scam_count,
            "processing_status": status.value,
        }
        changed = any(getattr(stats, key) != value for key, value in values.items())
        if changed:
            for key, value in values.items():
                setattr(stats, key, value)
            stats.last_updated = snapshot

        # Only ratings read above, and not revised since the snapshot, are marked
        rating_ids = [r.id for r in ratings]
        if rating_ids:
            (
                db.query(Rating)
                .filter(Rating.id.in_(rating_ids), Rating.updated_at <= snapshot)
                .update({Rating.processed: True}, synchronize_session=False)
            )

        logger.info(
            f"[aggregate] {url_hash[:12]} ({stats.domain}) final={breakdown.final_score} "
            f"domain={breakdown.domain_score} community={breakdown.community_score} "
            f"ratings={community.rating_count} status={status.value}"
        )
        return stats
