"""
Content risk scanner for listing text.

Pure and deterministic: the same (title, description) always yields the same
ScanResult, so it can be tested by table. Violations are data, never errors.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable


SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2}

# category -> severity -> terms. Multi-word entries are matched as phrases.
TERM_LISTS: dict[str, dict[str, tuple[str, ...]]] = {
    "profanity": {
        "high": ("fuck", "fucking", "shit", "bitch", "asshole", "bastard", "motherfucker", "cunt", "dickhead", "bullshit"),
        "medium": ("crap", "damn", "piss", "jackass", "screw you"),
        "low": ("frick", "freakin", "dang", "crud"),
    },
    "prohibited": {
        "high": (
            "cocaine", "heroin", "meth", "ketamine", "counterfeit", "stolen", "fake id",
            "firearm", "firearms", "ammunition", "explosives", "ivory", "endangered species",
        ),
        "medium": ("replica", "no paperwork", "no title", "without papers", "hull id removed"),
        "low": (),
    },
    "spam": {
        "high": (
            "click here", "visit my profile", "wire transfer", "western union", "moneygram",
            "send money first", "guaranteed profit", "double your money", "free gift card",
        ),
        "medium": ("dm for details", "contact via whatsapp", "telegram me", "text for price", "deposit first"),
        "low": ("special offer", "exclusive deal", "act now"),
    },
}

CONTACT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")),
    ("phone", re.compile(r"(?<!\w)(?:\+?\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\w)")),
)
CONTACT_SEVERITY = "medium"

CAPS_MIN_LENGTH = 20
CAPS_RATIO = 0.5
REPETITION_MIN_WORD = 4
REPETITION_LIMIT = 5

# numeric score bands per overall severity
SCORE_BANDS = {"low": (0, 30), "medium": (31, 70), "high": (71, 100)}
SCORE_STEP = 5


@dataclass(frozen=True)
class Violation:
    category: str       # profanity | prohibited | spam | contact_info
    severity: str       # low | medium | high
    matched_text: str
    location: str       # title | description

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "severity": self.severity,
            "matched_text": self.matched_text,
            "location": self.location,
        }


@dataclass(frozen=True)
class ScanResult:
    violations: tuple[Violation, ...] = field(default_factory=tuple)
    overall_severity: str = "low"
    score: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.violations

    def categories(self) -> list[str]:
        seen: list[str] = []
        for v in self.violations:
            if v.category not in seen:
                seen.append(v.category)
        return seen


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", " ", text.lower())).strip()


def _term_pattern(term: str) -> re.Pattern[str]:
    return re.compile(r"\b" + r"\s+".join(re.escape(w) for w in term.split()) + r"\b")


# compiled once at import; lists are constants
_COMPILED: tuple[tuple[str, str, str, re.Pattern[str]], ...] = tuple(
    (category, severity, term, _term_pattern(term))
    for category, bands in TERM_LISTS.items()
    for severity, terms in bands.items()
    for term in terms
)


def _excessive_caps(text: str) -> bool:
    if len(text) < CAPS_MIN_LENGTH:
        return False
    caps = sum(1 for ch in text if ch.isupper())
    return caps / len(text) > CAPS_RATIO


def _excessive_repetition(text: str) -> str | None:
    words = [w for w in _normalize(text).split() if len(w) >= REPETITION_MIN_WORD]
    if not words:
        return None
    word, count = Counter(words).most_common(1)[0]
    return word if count > REPETITION_LIMIT else None


def _scan_text(text: str, location: str) -> Iterable[Violation]:
    normalized = _normalize(text)
    for category, severity, term, pattern in _COMPILED:
        if pattern.search(normalized):
            yield Violation(category=category, severity=severity, matched_text=term, location=location)

    for kind, pattern in CONTACT_PATTERNS:
        m = pattern.search(text)
        if m:
            yield Violation(category="contact_info", severity=CONTACT_SEVERITY, matched_text=m.group(0), location=location)

    if _excessive_caps(text):
        yield Violation(category="spam", severity="medium", matched_text="excessive capitalization", location=location)

    repeated = _excessive_repetition(text)
    if repeated:
        yield Violation(category="spam", severity="medium", matched_text=f"repeated word: {repeated}", location=location)


def _overall(violations: tuple[Violation, ...]) -> str:
    if not violations:
        return "low"
    return max((v.severity for v in violations), key=SEVERITY_ORDER.__getitem__)


def _score(violations: tuple[Violation, ...], overall: str) -> int:
    if not violations:
        return 0
    lo, hi = SCORE_BANDS[overall]
    base = max(lo, 10) if overall == "low" else lo
    return min(hi, base + SCORE_STEP * (len(violations) - 1))


def scan(title: str, description: str) -> ScanResult:
    violations = tuple([*_scan_text(title or "", "title"), *_scan_text(description or "", "description")])
    overall = _overall(violations)
    return ScanResult(violations=violations, overall_severity=overall, score=_score(violations, overall))


def severity_for_score(score: int) -> str:
    for severity, (lo, hi) in SCORE_BANDS.items():
        if lo <= score <= hi:
            return severity
    raise ValueError(f"score out of range: {score}")


def flag_reason(result: ScanResult) -> str:
    if result.is_clean:
        return ""
    high = [v for v in result.violations if v.severity == "high"]
    cats = ", ".join(result.categories())
    if high:
        return f"Listing contains {len(high)} high-severity content violation(s) in categories: {cats}"
    return f"Listing flagged for potential {cats} content violations"


def violation_summary(result: ScanResult) -> str:
    lines = [f"Content scan report - {len(result.violations)} violation(s), overall {result.overall_severity}"]
    for i, v in enumerate(result.violations, start=1):
        lines.append(f"{i}. {v.category.upper()} ({v.severity}) in {v.location}: \"{v.matched_text}\"")
    return "\n".join(lines)


# Risk-to-action mapping applied at creation and resubmission.
RISK_PRIORITY = {"low": "standard", "medium": "high", "high": "urgent"}


@dataclass(frozen=True)
class RiskAssessment:
    severity: str
    score: int
    priority: str
    raise_flag: bool
    escalate: bool
    flags: tuple[dict, ...] = ()


def assess_risk(result: ScanResult, *, raised_at: str) -> RiskAssessment:
    """
    low -> no flag, standard priority; medium -> flags, high priority;
    high -> flags, urgent priority and escalation. Never blocks the listing.
    """
    severity = result.overall_severity
    raise_flag = SEVERITY_ORDER[severity] >= SEVERITY_ORDER["medium"]

    flags: list[dict] = []
    if raise_flag:
        for category in result.categories():
            matches = [v for v in result.violations if v.category == category]
            flags.append({
                "type": category,
                "severity": _overall(tuple(matches)),
                "status": "open",
                "source": "content_scanner",
                "matches": [v.to_dict() for v in matches],
                "reason": flag_reason(result),
                "raised_at": raised_at,
            })

    return RiskAssessment(
        severity=severity,
        score=result.score,
        priority=RISK_PRIORITY[severity],
        raise_flag=raise_flag,
        escalate=severity == "high",
        flags=tuple(flags),
    )
