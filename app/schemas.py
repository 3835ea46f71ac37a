from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ThreatVerdict(str, Enum):
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"
    PHISHING = "phishing"
    UNWANTED = "unwanted"
    UNKNOWN = "unknown"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class ProcessingStatus(str, Enum):
    """How much domain enrichment a URL's aggregate reflects."""
    COMMUNITY_ONLY = "community_only"
    COMMUNITY_WITH_BASIC_DOMAIN = "community_with_basic_domain"
    ENHANCED_WITH_DOMAIN_ANALYSIS = "enhanced_with_domain_analysis"

    @property
    def rank(self) -> int:
        return list(ProcessingStatus).index(self)

    def can_transition_to(self, target: "ProcessingStatus") -> bool:
        """
        Statuses only move forward, except that an enhanced aggregate may fall back
        to basic once its domain cache entry lapses.
        """
        if target.rank >= self.rank:
            return True
        return (
            self is ProcessingStatus.ENHANCED_WITH_DOMAIN_ANALYSIS
            and target is ProcessingStatus.COMMUNITY_WITH_BASIC_DOMAIN
        )


class InvalidStatusTransition(Exception):
    def __init__(self, current: ProcessingStatus, target: ProcessingStatus):
        super().__init__(f"Cannot move processing status from '{current.value}' to '{target.value}'")
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Scoring inputs and outputs
# ---------------------------------------------------------------------------

class DomainSignals(BaseModel):
    """External-signal snapshot for one domain, as produced by the analyzer."""
    domain: str
    domain_age_days: Optional[int] = None
    age_source: Optional[str] = None
    http_status: int = 0
    ssl_valid: bool = False
    threat_verdicts: Dict[str, ThreatVerdict] = Field(default_factory=dict)
    threat_score: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class CommunityRatings(BaseModel):
    rating_count: int
    average_rating: float
    spam_count: int = 0
    misleading_count: int = 0
    scam_count: int = 0


class ScoreFactor(BaseModel):
    component: str   # "domain", "community" or "final"
    reason: str
    delta: float


class ScoreBreakdown(BaseModel):
    domain_score: float
    community_score: float
    final_score: float
    content_type: Optional[str] = None
    content_modifier: float = 0
    blacklist_penalty: float = 0
    confidence: float = 1.0
    factors: List[ScoreFactor] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP boundary
# ---------------------------------------------------------------------------

class RatingSubmission(BaseModel):
    """Body expected by POST /rating."""
    url: str = Field(min_length=1)
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=2000)
    isSpam: bool = False
    isMisleading: bool = False
    isScam: bool = False


class RatingOut(BaseModel):
    url_hash: str
    rating: int
    is_spam: bool
    is_misleading: bool
    is_scam: bool
    comment: Optional[str] = None
    created_at: datetime
    processed: bool

    model_config = ConfigDict(from_attributes=True)


class UrlStatsResponse(BaseModel):
    """Shape returned by GET /url-stats."""
    url: str
    domain: Optional[str] = None
    trust_score: Optional[float] = None
    final_trust_score: Optional[float] = None
    domain_trust_score: Optional[float] = None
    community_trust_score: Optional[float] = None
    content_type: str = "unknown"
    rating_count: int = 0
    average_rating: Optional[float] = None
    spam_reports_count: int = 0
    misleading_reports_count: int = 0
    scam_reports_count: int = 0
    last_updated: Optional[datetime] = None
    data_source: str
    cache_status: str


class RatingSubmissionResponse(BaseModel):
    message: str
    rating: RatingOut
    urlStats: UrlStatsResponse
    processing: bool = True
