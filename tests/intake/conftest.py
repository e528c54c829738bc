"""Fixtures for intake pipeline tests."""

import json

import pytest

from src.intake.models import Classification, ReportSubmission
from src.intake.pipeline.classifier import TriageAdapter

TRIAGE_PAYLOAD = {
    "extracted_category": "water",
    "urgency_score": 0.8,
    "impact_scope": "single",
    "environmental_flag": False,
    "confidence_score": 0.9,
    "reasoning": "No water supply on the second floor",
    "urgency_level": "HIGH",
    "report_type": "INFRASTRUCTURE",
    "reporter_welfare_flag": False,
    "requires_immediate_action": False,
    "spam_confidence": 0.0,
    "context_validity": "VALID",
}


class FakeProvider:
    """In-process TriageProvider returning canned responses."""

    model = "fake-triage-model"

    def __init__(self, responses=None, error: Exception | None = None, healthy: bool = True):
        self.responses = list(responses or [json.dumps(TRIAGE_PAYLOAD)])
        self.error = error
        self.healthy = healthy
        self.prompts: list[str] = []

    def classify(self, text: str) -> str:
        self.prompts.append(text)
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def health_check(self) -> bool:
        return self.healthy


def triage_json(**overrides) -> str:
    payload = dict(TRIAGE_PAYLOAD)
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def make_classification():
    def _make(**overrides) -> Classification:
        fields = {
            "category": "water",
            "urgency_score": 0.8,
            "impact_scope": "single",
            "environmental_flag": False,
            "confidence_score": 0.9,
            "urgency_level": "HIGH",
            "report_type": "INFRASTRUCTURE",
            "reporter_welfare_flag": False,
            "requires_immediate_action": False,
            "spam_confidence": 0.0,
            "context_validity": "VALID",
            "reasoning": "Water outage",
        }
        fields.update(overrides)
        return Classification(**fields)

    return _make


@pytest.fixture
def make_submission():
    def _make(**overrides) -> ReportSubmission:
        fields = {
            "title": "No water in washrooms",
            "description": "There has been no running water on the second floor since the morning.",
            "category_id": "category-water",
            "location_id": "location-boys-hostel-a",
            "reporter_ref": "student-001",
        }
        fields.update(overrides)
        return ReportSubmission(**fields)

    return _make


@pytest.fixture
def fake_adapter():
    """TriageAdapter over a FakeProvider. Pass provider kwargs to customize."""

    def _make(*responses, **kwargs) -> TriageAdapter:
        provider = FakeProvider(responses=list(responses) or None, **kwargs)
        return TriageAdapter(provider=provider, timeout=2.0)

    return _make


@pytest.fixture
def triage_response():
    return triage_json
