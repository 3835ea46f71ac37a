import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import cache
from app.analyzer import DomainAnalyzer
from app.config import ScoringConfig, scoring_config
from app.database import utcnow
from app.models import AnalysisRequest, DomainCache, UrlStats
from app.schemas import DomainSignals, Priority

logger = logging.getLogger(__name__)


@dataclass
class DomainResult:
    domain: str
    success: bool
    signals: Optional[DomainSignals] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    requested: int = 0
    skipped: List[str] = field(default_factory=list)
    results: List[DomainResult] = field(default_factory=list)

    @property
    def analyzed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def summary(self) -> dict:
        return {
            "requested": self.requested,
            "skipped": len(self.skipped),
            "analyzed": self.analyzed,
            "errors": self.errors,
        }


def enqueue_analysis(db: Session, domain: str, priority: Priority = Priority.HIGH) -> None:
    """
    One-way request for a domain to be analyzed. Runs inside the caller's transaction,
    so the request is stored exactly when the caller's write is.

    A repeat request revives an entry that had used up its attempts.
    """
    existing = db.get(AnalysisRequest, domain)
    if existing is None:
        db.add(AnalysisRequest(domain=domain, priority=priority.value, requested_at=utcnow()))
        return
    existing.attempts = 0
    existing.last_error = None
    if priority is Priority.HIGH:
        existing.priority = priority.value


class BatchAnalyzer:
    """
    Runs the DomainAnalyzer over many domains with a fixed concurrency width and
    writes successful results into the domain cache.

    The two tunables are the width (analysis_concurrency / high_priority_concurrency)
    and the pause each worker holds its slot for after an analysis.
    """

    def __init__(
        self,
        db_factory: Callable[[], Session],
        analyzer: Optional[DomainAnalyzer] = None,
        config: ScoringConfig = None,
    ):
        self.db_factory = db_factory
        self.analyzer = analyzer or DomainAnalyzer()
        self.config = config or scoring_config

    def _width(self, priority: Priority) -> int:
        cfg = self.config.cache
        return cfg.high_priority_concurrency if priority is Priority.HIGH else cfg.analysis_concurrency

    async def _analyze_one(self, semaphore: asyncio.Semaphore, domain: str) -> DomainResult:
        async with semaphore:
            try:
                signals = await self.analyzer.analyze(domain)
                return DomainResult(domain=domain, success=True, signals=signals)
            except Exception as e:
                # One domain's failure must not abort the batch
                logger.error(f"[batch] Analysis failed for {domain}: {e!r}")
                return DomainResult(domain=domain, success=False, error=str(e) or type(e).__name__)
            finally:
                # Hold the slot briefly to respect third-party rate limits
                await asyncio.sleep(self.config.cache.analysis_delay_seconds)

    def _store(self, db: Session, result: DomainResult) -> None:
        try:
            cache.upsert_signals(db, result.signals, self.config)
            # A cached domain no longer needs its queued request
            db.query(AnalysisRequest).filter(AnalysisRequest.domain == result.domain).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[batch] Failed to cache analysis for {result.domain}: {e}")
            result.success = False
            result.error = f"cache write failed: {e}"

    async def refresh(self, domains: Iterable[str], priority: Priority = Priority.NORMAL) -> BatchResult:
        """
        Analyze the given domains. Domains with a still-valid cache entry are skipped
        unless priority is HIGH.
        """
        priority = Priority(priority)
        unique = list(dict.fromkeys(d for d in domains if d))
        batch = BatchResult(requested=len(unique))

        db = self.db_factory()
        try:
            if priority is Priority.HIGH:
                pending = unique
            else:
                now = utcnow()
                pending = []
                for domain in unique:
                    if cache.is_valid(cache.get_entry(db, domain), now):
                        batch.skipped.append(domain)
                    else:
                        pending.append(domain)

            if not pending:
                logger.info(f"[batch] Nothing to analyze ({len(batch.skipped)} domains have a fresh cache)")
                return batch

            width = self._width(priority)
            logger.info(f"[batch] Analyzing {len(pending)} domains (priority={priority.value}, width={width})")
            semaphore = asyncio.Semaphore(width)
            batch.results = list(await asyncio.gather(*(self._analyze_one(semaphore, d) for d in pending)))

            for result in batch.results:
                if result.success:
                    self._store(db, result)
        finally:
            db.close()

        logger.info(f"[batch] Completed: {batch.summary()}")
        return batch

    async def drain_queue(self, limit: Optional[int] = None) -> dict:
        """
        Process queued analysis requests at high priority. A request is removed only once
        its domain has been analyzed and cached; failures stay queued for the next pass.
        """
        cfg = self.config.cache
        limit = limit or cfg.batch_analysis_limit

        db = self.db_factory()
        try:
            requests = (
                db.query(AnalysisRequest)
                .filter(AnalysisRequest.attempts < cfg.queue_max_attempts)
                .order_by(AnalysisRequest.requested_at)
                .limit(limit)
                .all()
            )
            domains = [r.domain for r in requests]
        finally:
            db.close()

        if not domains:
            return {"dequeued": 0, "failed": 0}

        batch = await self.refresh(domains, Priority.HIGH)
        outcomes = {r.domain: r for r in batch.results}

        dequeued, failed = 0, 0
        db = self.db_factory()
        try:
            for domain in domains:
                outcome = outcomes.get(domain)
                if outcome is not None and outcome.success:
                    # the cache write already removed the request
                    dequeued += 1
                    continue
                request = db.get(AnalysisRequest, domain)
                if request is None:
                    continue
                request.attempts += 1
                request.last_error = outcome.error if outcome is not None else "not analyzed"
                failed += 1
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            # Requests stay queued; the next pass analyzes them again
            logger.error(f"[analysis-queue] Failed to update queue: {e}")
        finally:
            db.close()

        logger.info(f"[analysis-queue] Dequeued {dequeued}, {failed} left for retry")
        return {"dequeued": dequeued, "failed": failed}

    async def refresh_stale(self, limit: Optional[int] = None) -> dict:
        """Refresh domains referenced by url_stats that have no valid cache entry."""
        limit = limit or self.config.cache.batch_analysis_limit

        db = self.db_factory()
        try:
            now = utcnow()
            rows = (
                db.query(UrlStats.domain)
                .outerjoin(DomainCache, DomainCache.domain == UrlStats.domain)
                .filter(UrlStats.domain.isnot(None), UrlStats.domain != "unknown")
                .filter((DomainCache.domain.is_(None)) | (DomainCache.cache_expires_at <= now))
                .group_by(UrlStats.domain)
                .order_by(func.sum(UrlStats.rating_count).desc())
                .limit(limit)
                .all()
            )
            domains = [d for (d,) in rows]
        finally:
            db.close()

        if not domains:
            logger.info("[domain-refresh] All domains have a fresh cache")
            return {"requested": 0, "skipped": 0, "analyzed": 0, "errors": 0}

        batch = await self.refresh(domains, Priority.NORMAL)
        return batch.summary()
