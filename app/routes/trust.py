import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal
from app.database import get_db, get_db_factory
from app.models import UrlStats
from app.ratings import RatingFlags, RatingStoreError, submit_rating
from app.scheduler import JOBS, run_job
from app.schemas import (
    ProcessingStatus,
    RatingOut,
    RatingSubmission,
    RatingSubmissionResponse,
    UrlStatsResponse,
)
from app.stats import lookup_url_stats
from app.urls import InvalidUrlError

logger = logging.getLogger(__name__)

router = APIRouter()


async def trigger_analysis(db_factory):
    """Drain the analysis queue after a submission enqueued a new domain."""
    await run_job("analysis-queue", db_factory)


@router.get("/url-stats", response_model=UrlStatsResponse)
def url_stats(url: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    """
    Return the trust score and community aggregate for a URL.
    Never errors for a well-formed URL: unrated URLs get the domain baseline.
    """
    try:
        stats = lookup_url_stats(db, url)
    except InvalidUrlError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[/url-stats] {stats.domain} -> {stats.final_trust_score} ({stats.data_source})")
    return stats


@router.post("/rating", response_model=RatingSubmissionResponse)
def rating(
    body: RatingSubmission,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    db_factory=Depends(get_db_factory),
):
    """
    Store a rating for the authenticated principal.
    The returned urlStats may not include this rating yet; the aggregator runs on its own schedule.
    """
    try:
        result = submit_rating(
            db,
            body.url,
            principal.user_id_hash,
            body.score,
            RatingFlags(is_spam=body.isSpam, is_misleading=body.isMisleading, is_scam=body.isScam),
            body.comment,
        )
    except InvalidUrlError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RatingStoreError:
        raise HTTPException(status_code=500, detail="Failed to submit rating. Please try again.")

    if result.analysis_requested:
        background_tasks.add_task(trigger_analysis, db_factory)

    logger.info(f"[/rating] {result.outcome} rating for {result.domain}")
    return RatingSubmissionResponse(
        message=result.message,
        rating=RatingOut.model_validate(result.rating),
        urlStats=lookup_url_stats(db, result.url),
        processing=True,
    )


@router.post("/jobs/{job_name}")
async def trigger_job(
    job_name: str,
    principal: Principal = Depends(get_current_principal),
    db_factory=Depends(get_db_factory),
):
    """
    Run a scheduled job immediately, through the same entry point the scheduler uses. Blocks until complete.
    Requires a principal: the analysis jobs spend the external lookup budget.
    """
    if job_name not in JOBS:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job_name}'")
    logger.info(f"[/jobs] Manual run of '{job_name}' by {principal.user_id_hash[:12]}")
    return await run_job(job_name, db_factory)


@router.get("/processing-status")
def processing_status(db: Session = Depends(get_db)):
    """Number of URLs at each processing status."""
    rows = (
        db.query(UrlStats.processing_status, func.count(UrlStats.url_hash))
        .group_by(UrlStats.processing_status)
        .all()
    )
    counts = {status.value: 0 for status in ProcessingStatus}
    counts.update({status: count for status, count in rows})
    return {"counts": counts, "total": sum(counts.values())}
