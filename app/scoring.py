import logging
from typing import List, Optional

from app.config import ScoringConfig, scoring_config
from app.models import BlacklistRule, ContentTypeRule
from app.schemas import (
    CommunityRatings,
    DomainSignals,
    ScoreBreakdown,
    ScoreFactor,
    ThreatVerdict,
)

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class TrustScoreCalculator:
    """
    Combines cached domain signals, community ratings, a content-type rule and a
    blacklist match into a final 0-100 trust score.

    Pure: reads nothing but its arguments and the configuration it was built with.
    """

    def __init__(self, config: ScoringConfig = None):
        self.config = config or scoring_config

    # ------------------------------------------------------------------
    # Domain component
    # ------------------------------------------------------------------

    def baseline(self, domain: Optional[str]) -> float:
        """Neutral starting point from the known-domain table, else the TLD class."""
        cfg = self.config.domain
        if not domain:
            return cfg.default_baseline
        if domain in cfg.baselines:
            return cfg.baselines[domain]
        for suffix, score in cfg.tld_baselines.items():
            if domain.endswith(suffix):
                return score
        return cfg.default_baseline

    def _age_adjustment(self, age_days: Optional[int]) -> tuple[float, Optional[str]]:
        bonus = self.config.domain.age_bonus
        if age_days is None:
            return 0, None
        if age_days >= 5 * DAYS_PER_YEAR:
            return bonus.five_years_plus, "domain older than 5 years"
        if age_days >= 2 * DAYS_PER_YEAR:
            return bonus.two_years_plus, "domain older than 2 years"
        if age_days >= DAYS_PER_YEAR:
            return bonus.one_year_plus, "domain older than 1 year"
        if age_days < bonus.new_domain_days:
            return bonus.new_domain_penalty, f"domain younger than {bonus.new_domain_days} days"
        return 0, None

    def _worst_threat_penalty(self, verdicts: dict) -> tuple[float, Optional[str]]:
        """
        Each provider is evaluated on its own; only the single worst penalty counts,
        so two providers agreeing on "phishing" do not double the deduction.
        """
        penalties = self.config.domain.threat_penalties
        worst, reason = 0.0, None
        for provider, verdict in sorted(verdicts.items()):
            verdict = ThreatVerdict(verdict)
            penalty = penalties.get(provider, {}).get(verdict.value, 0)
            if penalty < worst:
                worst, reason = penalty, f"{provider} reported {verdict.value}"
        return worst, reason

    def blacklist_penalty(self, rule: Optional[BlacklistRule]) -> float:
        if rule is None:
            return 0.0
        cfg = self.config.blacklist
        return min(rule.severity * cfg.severity_multiplier, cfg.max_penalty)

    def domain_component(
        self,
        domain: Optional[str],
        signals: Optional[DomainSignals],
        blacklist_match: Optional[BlacklistRule] = None,
    ) -> tuple[float, float, List[ScoreFactor]]:
        """
        Returns (score, blacklist_penalty, factors).
        Without signals only the baseline (and a blacklist penalty) applies.
        """
        cfg = self.config.domain
        score = self.baseline(domain)
        factors = [ScoreFactor(component="domain", reason="baseline", delta=score)]

        def apply(delta: float, reason: Optional[str]):
            nonlocal score
            if delta and reason:
                score += delta
                factors.append(ScoreFactor(component="domain", reason=reason, delta=delta))

        if signals is not None:
            apply(*self._age_adjustment(signals.domain_age_days))

            if signals.ssl_valid:
                apply(cfg.ssl_bonus, "valid TLS certificate")
            else:
                apply(cfg.ssl_penalty, "no valid TLS certificate")

            if signals.http_status >= 400:
                apply(cfg.http_error_penalty, f"HTTP status {signals.http_status}")

            apply(*self._worst_threat_penalty(signals.threat_verdicts))

        penalty = self.blacklist_penalty(blacklist_match)
        if penalty:
            apply(-penalty, f"blacklisted ({blacklist_match.blacklist_type}, severity {blacklist_match.severity})")

        return round(clamp(score), 2), penalty, factors

    # ------------------------------------------------------------------
    # Community component
    # ------------------------------------------------------------------

    def community_component(
        self,
        ratings: CommunityRatings,
        min_ratings: Optional[int] = None,
    ) -> tuple[float, float, List[ScoreFactor]]:
        """
        Returns (score, confidence, factors).

        Raises:
            ValueError: if there are no ratings; callers use the domain-only baseline instead
        """
        if ratings.rating_count <= 0:
            raise ValueError("Community score is undefined without ratings")

        cfg = self.config.community
        min_ratings = min_ratings or cfg.min_ratings_for_full_confidence
        count = ratings.rating_count

        # 1-5 stars mapped linearly onto 0-100
        base = (ratings.average_rating - 1) / 4 * 100
        factors = [ScoreFactor(component="community", reason="average rating", delta=round(base, 2))]

        score = base
        for label, flagged, weight in (
            ("spam", ratings.spam_count, cfg.spam_penalty),
            ("misleading", ratings.misleading_count, cfg.misleading_penalty),
            ("scam", ratings.scam_count, cfg.scam_penalty),
        ):
            if flagged:
                penalty = flagged / count * weight
                score -= penalty
                factors.append(ScoreFactor(component="community", reason=f"{label} reports", delta=-round(penalty, 2)))

        score = clamp(score)

        # Small samples are pulled toward neutral
        confidence = min(1.0, count / min_ratings)
        if confidence < 1.0:
            blended = score * confidence + cfg.neutral_score * (1 - confidence)
            factors.append(ScoreFactor(
                component="community",
                reason=f"low confidence ({count}/{min_ratings} ratings)",
                delta=round(blended - score, 2),
            ))
            score = blended

        return round(clamp(score), 2), round(confidence, 4), factors

    # ------------------------------------------------------------------
    # Final score
    # ------------------------------------------------------------------

    def compute(
        self,
        domain: Optional[str],
        domain_signals: Optional[DomainSignals],
        community: CommunityRatings,
        content_rule: Optional[ContentTypeRule] = None,
        blacklist_match: Optional[BlacklistRule] = None,
    ) -> ScoreBreakdown:
        domain_score, penalty, domain_factors = self.domain_component(domain, domain_signals, blacklist_match)
        min_ratings = content_rule.min_ratings_required if content_rule is not None else None
        community_score, confidence, community_factors = self.community_component(community, min_ratings)

        weights = self.config.weights
        modifier = content_rule.trust_score_modifier if content_rule is not None else 0.0
        final = weights.domain_weight * domain_score + weights.community_weight * community_score + modifier

        factors = domain_factors + community_factors
        if modifier:
            factors.append(ScoreFactor(
                component="final",
                reason=f"content type '{content_rule.content_type}'",
                delta=modifier,
            ))

        return ScoreBreakdown(
            domain_score=domain_score,
            community_score=community_score,
            final_score=round(clamp(final), 2),
            content_type=content_rule.content_type if content_rule is not None else None,
            content_modifier=modifier,
            blacklist_penalty=penalty,
            confidence=confidence,
            factors=factors,
        )


# Shared singleton: used by the aggregator and the stats read path
calculator = TrustScoreCalculator()
