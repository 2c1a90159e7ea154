from __future__ import annotations

import logging
from decimal import Decimal
from types import SimpleNamespace

import pytest

from educrm.crm.scoring import (
    BASE_SCORE,
    FallbackLeadScorer,
    RuleBasedLeadScorer,
    categorize_source,
    score_lead,
)


def _lead(**fields: object) -> SimpleNamespace:
    defaults: dict[str, object] = {
        "email": "someone@gmail.com",
        "phone": None,
        "program_interest": None,
        "target_country": None,
        "budget": None,
        "source": None,
    }
    defaults.update(fields)
    return SimpleNamespace(**defaults)


def test_bare_lead_gets_base_score() -> None:
    assert score_lead(_lead()) == BASE_SCORE


def test_professional_email_phone_and_budget() -> None:
    lead = _lead(email="ana@university-partners.org", phone="+1-555-0100", budget=Decimal("12000"))
    assert score_lead(lead) == 90


@pytest.mark.parametrize(
    ("fields", "expected"),
    [
        ({"program_interest": "MBA"}, 50),
        ({"program_interest": "MSc Computer Science"}, 60),
        ({"target_country": "Germany"}, 60),
        ({"budget": 0}, 50),
        ({"budget": "not-a-number"}, 50),
        ({"source": "LinkedIn campaign"}, 60),
        ({"source": "walk-in"}, 50),
    ],
)
def test_individual_bonuses(fields: dict[str, object], expected: int) -> None:
    assert score_lead(_lead(**fields)) == expected


def test_score_is_clamped_to_hundred() -> None:
    lead = _lead(
        email="ana@partners.org",
        phone="+1",
        program_interest="Masters in Public Health",
        target_country="Canada",
        budget=50000,
        source="Referral",
    )
    assert score_lead(lead) == 100


@pytest.mark.parametrize(
    ("raw", "category"),
    [
        ("Website form", "website"),
        ("Partner referral", "referral"),
        ("Facebook ad", "social_media"),
        ("Newsletter", "email"),
        ("Open day event", "event"),
        ("Google Ads", "search_engine"),
        ("Walk-in", "other"),
        (None, "other"),
    ],
)
def test_categorize_source(raw: str | None, category: str) -> None:
    assert categorize_source(raw) == category


def test_fallback_scorer_uses_rules_when_primary_fails(caplog: pytest.LogCaptureFixture) -> None:
    class Unavailable:
        name = "remote"

        def score(self, lead: object) -> int:
            raise TimeoutError("upstream timed out")

    caplog.set_level(logging.WARNING)
    scorer = FallbackLeadScorer(Unavailable())
    assert scorer.name == "remote+rules"
    assert scorer.score(_lead()) == BASE_SCORE
    assert any(record.getMessage() == "lead.scoring_fallback" for record in caplog.records)


def test_fallback_scorer_clamps_primary_output() -> None:
    class Generous:
        name = "generous"

        def score(self, lead: object) -> int:
            return 250

    assert FallbackLeadScorer(Generous(), RuleBasedLeadScorer()).score(_lead()) == 100
