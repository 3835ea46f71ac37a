from types import SimpleNamespace

import pytest

from app.config import ScoringConfig
from app.schemas import CommunityRatings, DomainSignals, ThreatVerdict
from app.scoring import TrustScoreCalculator, clamp


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_signals(**kwargs) -> DomainSignals:
    """DomainSignals for example.com with neutral values, overridable via kwargs."""
    defaults = {
        "domain": "example.com",
        "domain_age_days": None,
        "http_status": 200,
        "ssl_valid": True,
        "threat_verdicts": {},
    }
    defaults.update(kwargs)
    return DomainSignals(**defaults)


def make_ratings(count=10, average=3.0, spam=0, misleading=0, scam=0) -> CommunityRatings:
    return CommunityRatings(
        rating_count=count,
        average_rating=average,
        spam_count=spam,
        misleading_count=misleading,
        scam_count=scam,
    )


def blacklist(severity, blacklist_type="phishing"):
    return SimpleNamespace(severity=severity, blacklist_type=blacklist_type)


def content_rule(modifier=0, min_ratings=3, content_type="article"):
    return SimpleNamespace(
        trust_score_modifier=modifier,
        min_ratings_required=min_ratings,
        content_type=content_type,
    )


@pytest.fixture
def calc():
    return TrustScoreCalculator(ScoringConfig())


# ---------------------------------------------------------------------------
# Baseline
# ---------------------------------------------------------------------------

class TestBaseline:
    def test_known_domain_uses_table(self, calc):
        assert calc.baseline("wikipedia.org") == 85

    def test_tld_class_fallbacks(self, calc):
        assert calc.baseline("someuniversity.edu") == 75
        assert calc.baseline("agency.gov") == 75
        assert calc.baseline("charity.org") == 65
        assert calc.baseline("shop.com") == 60
        assert calc.baseline("isp.net") == 60

    def test_unknown_tld_uses_default(self, calc):
        assert calc.baseline("example.io") == 50

    def test_missing_domain_uses_default(self, calc):
        assert calc.baseline(None) == 50

    @pytest.mark.parametrize("domain", ["google.com", "bbc.com", "example.com", "example.org", "example.io"])
    def test_no_signals_and_no_blacklist_equals_baseline(self, calc, domain):
        score, penalty, _ = calc.domain_component(domain, None, None)
        assert score == calc.baseline(domain)
        assert penalty == 0

    def test_baselines_are_configurable(self):
        config = ScoringConfig()
        config.domain.baselines["example.com"] = 90
        assert TrustScoreCalculator(config).baseline("example.com") == 90


# ---------------------------------------------------------------------------
# Domain component
# ---------------------------------------------------------------------------

class TestDomainComponent:
    def test_six_year_old_com_with_valid_tls_scores_80(self, calc):
        signals = make_signals(domain_age_days=6 * 365, ssl_valid=True)
        score, _, _ = calc.domain_component("example.com", signals)
        assert score == 80

    @pytest.mark.parametrize("age_days, expected", [
        (5 * 365, 60 + 15 + 5),
        (2 * 365, 60 + 10 + 5),
        (365, 60 + 5 + 5),
        (200, 60 + 5),
        (10, 60 - 10 + 5),
        (None, 60 + 5),
    ])
    def test_age_brackets(self, calc, age_days, expected):
        score, _, _ = calc.domain_component("example.com", make_signals(domain_age_days=age_days))
        assert score == expected

    def test_invalid_tls_is_penalized(self, calc):
        score, _, _ = calc.domain_component("example.com", make_signals(ssl_valid=False))
        assert score == 60 - 15

    def test_http_error_is_penalized(self, calc):
        score, _, _ = calc.domain_component("example.com", make_signals(http_status=503))
        assert score == 60 + 5 - 20

    def test_unreachable_is_not_an_http_error(self, calc):
        score, _, _ = calc.domain_component("example.com", make_signals(http_status=0, ssl_valid=False))
        assert score == 60 - 15

    def test_threat_verdicts_take_worst_not_sum(self, calc):
        signals = make_signals(threat_verdicts={
            "google_safe_browsing": ThreatVerdict.PHISHING,   # -45
            "phishtank": ThreatVerdict.PHISHING,              # -40
        })
        score, _, factors = calc.domain_component("example.com", signals)
        assert score == 60 + 5 - 45
        assert any("google_safe_browsing" in f.reason for f in factors)

    @pytest.mark.parametrize("provider, verdict, penalty", [
        ("google_safe_browsing", "malicious", 50),
        ("google_safe_browsing", "phishing", 45),
        ("google_safe_browsing", "unwanted", 30),
        ("google_safe_browsing", "suspicious", 25),
        ("phishtank", "phishing", 40),
        ("phishtank", "suspicious", 25),
        ("heuristic", "suspicious", 25),
    ])
    def test_threat_penalties(self, calc, provider, verdict, penalty):
        signals = make_signals(ssl_valid=True, threat_verdicts={provider: verdict})
        score, _, _ = calc.domain_component("example.io", signals)
        assert score == clamp(50 + 5 - penalty)

    def test_safe_and_unknown_verdicts_cost_nothing(self, calc):
        signals = make_signals(threat_verdicts={"google_safe_browsing": "safe", "phishtank": "unknown"})
        score, _, _ = calc.domain_component("example.com", signals)
        assert score == 65

    def test_blacklist_penalty_is_severity_times_five(self, calc):
        score, penalty, _ = calc.domain_component("example.com", None, blacklist(severity=4))
        assert penalty == 20
        assert score == 40

    def test_blacklist_penalty_is_capped_at_50(self, calc):
        score, penalty, _ = calc.domain_component("example.com", None, blacklist(severity=10))
        assert penalty == 50
        assert score == 10

    def test_domain_score_is_clamped_at_zero(self, calc):
        signals = make_signals(ssl_valid=False, http_status=500, threat_verdicts={"google_safe_browsing": "malicious"})
        score, _, _ = calc.domain_component("example.io", signals, blacklist(severity=10))
        assert score == 0

    def test_domain_score_is_clamped_at_hundred(self):
        config = ScoringConfig()
        config.domain.baselines["example.com"] = 95
        score, _, _ = TrustScoreCalculator(config).domain_component(
            "example.com", make_signals(domain_age_days=20 * 365)
        )
        assert score == 100


# ---------------------------------------------------------------------------
# Community component
# ---------------------------------------------------------------------------

class TestCommunityComponent:
    def test_three_rating_scenario(self, calc):
        # {5★, 4★ spam, 3★} -> avg 4.0, base 75, spam penalty 10, raw 65, blended toward 50 at 3/5
        ratings = make_ratings(count=3, average=4.0, spam=1)
        score, confidence, factors = calc.community_component(ratings)

        assert confidence == pytest.approx(0.6)
        assert score == pytest.approx(65 * 0.6 + 50 * 0.4)
        assert any(f.reason == "spam reports" and f.delta == pytest.approx(-10) for f in factors)

    def test_full_confidence_is_raw_score(self, calc):
        score, confidence, _ = calc.community_component(make_ratings(count=5, average=4.0, spam=1))
        assert confidence == 1.0
        assert score == pytest.approx(75 - 30 / 5)

    def test_star_mapping_endpoints(self, calc):
        assert calc.community_component(make_ratings(average=1.0))[0] == 0
        assert calc.community_component(make_ratings(average=5.0))[0] == 100

    def test_zero_ratings_is_undefined(self, calc):
        with pytest.raises(ValueError):
            calc.community_component(make_ratings(count=0, average=0))

    def test_min_ratings_override(self, calc):
        _, confidence, _ = calc.community_component(make_ratings(count=2), min_ratings=2)
        assert confidence == 1.0

    def test_penalties_clamp_before_blend(self, calc):
        ratings = make_ratings(count=5, average=1.0, spam=5, misleading=5, scam=5)
        score, _, _ = calc.community_component(ratings)
        assert score == 0

    def test_monotonic_in_average_rating(self, calc):
        for count in (1, 3, 5, 20):
            scores = [
                calc.community_component(make_ratings(count=count, average=avg, spam=1 if count > 1 else 0))[0]
                for avg in (1.0, 1.5, 2.0, 2.75, 3.0, 3.9, 4.5, 5.0)
            ]
            assert scores == sorted(scores)

    @pytest.mark.parametrize("flag", ["spam", "misleading", "scam"])
    def test_monotonic_in_report_ratio(self, calc, flag):
        for count in (2, 4, 10):
            scores = [
                calc.community_component(make_ratings(count=count, average=4.0, **{flag: n}))[0]
                for n in range(count + 1)
            ]
            assert scores == sorted(scores, reverse=True)


# ---------------------------------------------------------------------------
# Final score
# ---------------------------------------------------------------------------

class TestCompute:
    def test_weighted_combination(self, calc):
        result = calc.compute("example.com", make_signals(domain_age_days=6 * 365), make_ratings(average=4.0))
        assert result.domain_score == 80
        assert result.community_score == 75
        assert result.final_score == pytest.approx(0.4 * 80 + 0.6 * 75)

    def test_content_modifier_applied_after_weighting(self, calc):
        result = calc.compute("example.com", None, make_ratings(average=3.0), content_rule(modifier=10))
        assert result.final_score == pytest.approx(0.4 * 60 + 0.6 * 50 + 10)
        assert result.content_type == "article"
        assert result.content_modifier == 10

    def test_content_rule_min_ratings_drives_confidence(self, calc):
        result = calc.compute("example.com", None, make_ratings(count=2, average=5.0), content_rule(min_ratings=2))
        assert result.confidence == 1.0
        assert result.community_score == 100

    def test_final_score_is_clamped(self, calc):
        result = calc.compute("wikipedia.org", None, make_ratings(average=5.0), content_rule(modifier=40))
        assert result.final_score == 100

    def test_weights_are_configurable(self):
        config = ScoringConfig()
        config.weights.domain_weight = 1.0
        config.weights.community_weight = 0.0
        result = TrustScoreCalculator(config).compute("example.com", None, make_ratings(average=1.0))
        assert result.final_score == 60

    def test_factors_explain_the_score(self, calc):
        signals = make_signals(domain_age_days=6 * 365)
        result = calc.compute("example.com", signals, make_ratings(count=3, average=4.0, spam=1))
        reasons = [f.reason for f in result.factors]
        assert "baseline" in reasons
        assert "valid TLS certificate" in reasons
        assert "spam reports" in reasons
        assert any(r.startswith("low confidence") for r in reasons)
