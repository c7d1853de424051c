import pytest

from app.services.content_scanner import (
    assess_risk,
    flag_reason,
    scan,
    severity_for_score,
    violation_summary,
)

CLEAN_TITLE = "2015 Boston Whaler Outrage 280"
CLEAN_DESC = "Well maintained center console with twin outboards and a trailer."


def test_clean_text_has_no_violations():
    result = scan(CLEAN_TITLE, CLEAN_DESC)
    assert result.is_clean
    assert result.overall_severity == "low"
    assert result.score == 0


@pytest.mark.parametrize(
    "title, description, category, severity",
    [
        (CLEAN_TITLE, "Comes with a firearm locker and spare parts.", "prohibited", "high"),
        (CLEAN_TITLE, "Selling as is, no paperwork available for the hull.", "prohibited", "medium"),
        ("Damn fine boat for sale", CLEAN_DESC, "profanity", "medium"),
        (CLEAN_TITLE, "Payment by western union only, serious buyers.", "spam", "high"),
        (CLEAN_TITLE, "Special offer this month on a great family boat.", "spam", "low"),
        (CLEAN_TITLE, "Questions? Write to seller@example.com anytime.", "contact_info", "medium"),
        (CLEAN_TITLE, "Questions? Call (305) 555-1212 after six.", "contact_info", "medium"),
        ("BEST BOAT EVER MUST SELL NOW", CLEAN_DESC, "spam", "medium"),
        (CLEAN_TITLE, "great boat great boat great boat great boat great boat great boat", "spam", "medium"),
    ],
)
def test_violation_categories(title, description, category, severity):
    result = scan(title, description)
    matches = [v for v in result.violations if v.category == category]
    assert matches, result.violations
    assert severity in {v.severity for v in matches}


def test_matching_is_whole_word_and_case_insensitive():
    assert scan(CLEAN_TITLE, "Methodical owner, every service logged.").is_clean
    assert not scan(CLEAN_TITLE, "Trailer was STOLEN and recovered.").is_clean


def test_violation_location_is_reported():
    result = scan("Stolen boat", CLEAN_DESC)
    assert [(v.category, v.location) for v in result.violations] == [("prohibited", "title")]


def test_overall_severity_is_the_maximum():
    result = scan(CLEAN_TITLE, "Special offer, email me at a@b.co, includes ammunition.")
    assert {v.severity for v in result.violations} == {"low", "medium", "high"}
    assert result.overall_severity == "high"


def test_scan_is_deterministic():
    text = "Call 555-123-4567 for ivory trim details, special offer"
    assert scan(CLEAN_TITLE, text) == scan(CLEAN_TITLE, text)


@pytest.mark.parametrize("score, severity", [(0, "low"), (30, "low"), (31, "medium"), (70, "medium"), (71, "high"), (100, "high")])
def test_score_bands(score, severity):
    assert severity_for_score(score) == severity


def test_score_stays_inside_band_of_overall_severity():
    for desc in ("Special offer", "no paperwork", "stolen", "stolen cocaine heroin meth ketamine ivory firearm explosives"):
        result = scan(CLEAN_TITLE, desc)
        assert severity_for_score(result.score) == result.overall_severity


@pytest.mark.parametrize(
    "description, priority, flagged, escalate",
    [
        (CLEAN_DESC, "standard", False, False),
        ("Special offer on this clean boat, runs great.", "standard", False, False),
        ("Text 555-123-4567 for details on this clean boat.", "high", True, False),
        ("Clean boat, title says stolen but all fine.", "urgent", True, True),
    ],
)
def test_risk_to_action_mapping(description, priority, flagged, escalate):
    risk = assess_risk(scan(CLEAN_TITLE, description), raised_at="2026-01-01T00:00:00+00:00")
    assert risk.priority == priority
    assert risk.raise_flag is flagged
    assert bool(risk.flags) is flagged
    assert risk.escalate is escalate


def test_one_flag_per_category():
    risk = assess_risk(scan("Stolen ivory", "Firearm included, email x@y.com"), raised_at="t")
    assert sorted(f["type"] for f in risk.flags) == ["contact_info", "prohibited"]
    prohibited = next(f for f in risk.flags if f["type"] == "prohibited")
    assert prohibited["severity"] == "high"
    assert prohibited["status"] == "open"
    assert len(prohibited["matches"]) == 3


def test_reason_and_summary_describe_violations():
    result = scan(CLEAN_TITLE, "stolen")
    assert "high-severity" in flag_reason(result)
    summary = violation_summary(result)
    assert summary.splitlines()[0].startswith("Content scan report - 1 violation(s)")
    assert 'PROHIBITED (high) in description: "stolen"' in summary
    assert flag_reason(scan(CLEAN_TITLE, CLEAN_DESC)) == ""
