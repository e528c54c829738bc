"""Spam and content-policy gate for incoming reports.

Two layers. Conservative regex rules catch unambiguous junk (test
messages, keyboard mashing, advertising) before any provider call. The
classification's report type and spam confidence catch the rest.
Intent-level judgement is left to the classifier so that short but real
reports are not blocked.
"""

import logging
import re
from dataclasses import dataclass

from src.intake.models import (
    STATUS_ACCEPTED,
    STATUS_BLOCKED_POLICY,
    STATUS_REJECTED_SPAM,
    Classification,
)

logger = logging.getLogger(__name__)

SPAM_CONFIDENCE_THRESHOLD = 0.8
MIN_CONTENT_LENGTH_FOR_RULES = 10

SPAM_MESSAGE = (
    "This looks like a test or spam. Please submit a real campus issue with a clear description."
)
POLICY_MESSAGE = (
    "This submission contains links or promotional content, which is not allowed. "
    "Please describe the campus issue without advertising or links."
)

RULE_TEST = "test"
RULE_GIBBERISH = "gibberish"
RULE_ADVERTISING = "advertising"

# (pattern, reason, kind). Advertising hits are policy violations, the rest are spam.
SPAM_PATTERNS: tuple[tuple[re.Pattern, str, str], ...] = (
    (re.compile(r"^test\s*$", re.I), "Test message", RULE_TEST),
    (re.compile(r"^testing\s*$", re.I), "Test message", RULE_TEST),
    (re.compile(r"^hello\s*world\s*$", re.I), "Placeholder message", RULE_TEST),
    (re.compile(r"^asdf\s*$", re.I), "Keyboard mashing", RULE_GIBBERISH),
    (re.compile(r"^qwe(rty)?\s*$", re.I), "Keyboard mashing", RULE_GIBBERISH),
    (re.compile(r"^abc\s*$", re.I), "Placeholder", RULE_TEST),
    (re.compile(r"^xyz\s*$", re.I), "Placeholder", RULE_TEST),
    (re.compile(r"^sample\s*(text|data)?\s*$", re.I), "Sample text", RULE_TEST),
    (re.compile(r"^(hi|hello|hey)\s*[,!]?\s*$", re.I | re.M), "Greeting only", RULE_TEST),
    (re.compile(r"^(nothing|nope|naah|no)\s*[.!]?\s*$", re.I | re.M), "No real content", RULE_TEST),
    (re.compile(r"just\s+(testing|checking|kidding)\b", re.I), "Testing/joke", RULE_TEST),
    (re.compile(r"sirf\s+test\s*(hai|kar\s*raha)", re.I), "Test message (Hinglish)", RULE_TEST),
    (re.compile(r"[b-df-hj-np-tv-z]{8,}", re.I), "Gibberish (long consonant string)", RULE_GIBBERISH),
    (re.compile(r"(.)\1{6,}"), "Repeated character gibberish", RULE_GIBBERISH),
    (
        re.compile(r"(buy|discount|offer|click\s+here|https?://)", re.I),
        "Advertising or link",
        RULE_ADVERTISING,
    ),
)

SPAM_PHRASES = ("hello world", "qwerty", "asdfgh", "sample text", "testing 123")

_CONSONANT_RUN_RE = re.compile(r"[b-df-hj-np-tv-z]{6,}", re.I)
_VOWEL_RE = re.compile(r"[aeiou]", re.I)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class RuleResult:
    is_spam: bool
    reason: str = ""
    kind: str | None = None


@dataclass(frozen=True)
class GateDecision:
    status: str  # accepted / rejected_spam / blocked_policy
    reason: str = ""
    message: str = ""
    reporter_welfare_flag: bool = False
    requires_immediate_action: bool = False

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_ACCEPTED


def looks_like_gibberish(text: str) -> bool:
    t = _WHITESPACE_RE.sub(" ", text).strip()
    if len(t) < 15:
        return False
    gibberish_length = sum(len(m) for m in _CONSONANT_RUN_RE.findall(t))
    if gibberish_length >= 12 and gibberish_length / len(t) > 0.35:
        return True
    vowels = len(_VOWEL_RE.findall(t))
    return len(t) >= 20 and vowels < len(t) * 0.15


def rule_based_check(title: str, description: str) -> RuleResult:
    """Regex and phrase rules over title, description and both combined."""
    t = (title or "").strip()
    d = (description or "").strip()
    combined = f"{t}\n{d}".strip()

    for block in (t, d, combined):
        if len(block) < 2:
            continue
        for pattern, reason, kind in SPAM_PATTERNS:
            if pattern.search(block):
                return RuleResult(True, reason, kind)

    if len(combined) < MIN_CONTENT_LENGTH_FOR_RULES:
        return RuleResult(False)

    if looks_like_gibberish(combined):
        return RuleResult(True, "Gibberish or keyboard mashing", RULE_GIBBERISH)

    lowered = combined.lower()
    for phrase in SPAM_PHRASES:
        if phrase in lowered:
            return RuleResult(True, "Known spam phrase", RULE_TEST)

    return RuleResult(False)


def evaluate(
    title: str, description: str, classification: Classification | None = None
) -> GateDecision:
    """Decide whether a report enters the pipeline.

    ``classification`` may be omitted for a rules-only pre-check.
    """
    rule = rule_based_check(title, description)
    if rule.is_spam:
        if rule.kind == RULE_ADVERTISING:
            logger.info("Submission blocked by content policy: %s", rule.reason)
            return GateDecision(STATUS_BLOCKED_POLICY, rule.reason, POLICY_MESSAGE)
        logger.info("Submission rejected by spam rules: %s", rule.reason)
        return GateDecision(STATUS_REJECTED_SPAM, rule.reason, SPAM_MESSAGE)

    if classification is None:
        return GateDecision(STATUS_ACCEPTED)

    if classification.report_type == "SPAM" or (
        classification.spam_confidence >= SPAM_CONFIDENCE_THRESHOLD
    ):
        reason = f"Classified {classification.report_type} (spam_confidence={classification.spam_confidence:.2f})"
        logger.info("Submission rejected by classifier: %s", reason)
        return GateDecision(STATUS_REJECTED_SPAM, reason, SPAM_MESSAGE)

    welfare = classification.reporter_welfare_flag
    immediate = classification.requires_immediate_action
    if welfare or immediate:
        logger.warning(
            "Report needs human attention (welfare=%s, immediate_action=%s, urgency=%s)",
            welfare,
            immediate,
            classification.urgency_level,
        )
    return GateDecision(
        STATUS_ACCEPTED,
        reporter_welfare_flag=welfare,
        requires_immediate_action=immediate,
    )
