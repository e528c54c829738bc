"""Report intake and issue group endpoints."""

import json
import logging
import math
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..intake import admin, db_helpers
from ..intake.errors import (
    AggregationConflict,
    IntakeError,
    NotFoundError,
    ValidationError,
)
from ..intake.models import ReportSubmission
from ..intake.pipeline.aggregator import get_linked_reports, get_report_count
from ..intake.pipeline.frequency import format_frequency, get_latest_frequency_sample, is_high_frequency
from ..intake.pipeline.priority import priority_level
from ..intake.pipeline.routing import get_routing_suggestion
from ..intake.runner import process_report, stream_report

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Intake"])


# --- Pydantic Models ---


class ReportRequest(BaseModel):
    title: str
    description: str
    category_id: str
    location_id: str
    reporter_ref: str

    def to_submission(self) -> ReportSubmission:
        return ReportSubmission(
            title=self.title,
            description=self.description,
            category_id=self.category_id,
            location_id=self.location_id,
            reporter_ref=self.reporter_ref,
        )


class ReportResponse(BaseModel):
    status: str  # accepted / rejected_spam / blocked_policy / error
    message: str
    report_id: str | None = None
    group_id: str | None = None
    aggregation_status: str | None = None  # new / linked
    initial_priority: float | None = None
    priority_level: str | None = None
    urgency_level: str | None = None
    requires_immediate_action: bool | None = None
    authority_name: str | None = None
    error_stage: str | None = None


class LinkedReport(BaseModel):
    id: str
    title: str
    description: str
    created_at: str
    linked_at: str


class PrioritySnapshot(BaseModel):
    total_score: float
    priority_level: str
    urgency_component: float | None
    impact_component: float | None
    frequency_component: float | None
    environmental_component: float | None
    raw_score: float | None
    confidence_multiplier: float | None
    is_manual: bool
    reason: str | None
    computed_at: str


class FrequencyInfo(BaseModel):
    report_count: int
    window_minutes: int
    label: str
    is_high: bool
    computed_at: str


class IssueGroupResponse(BaseModel):
    id: str
    status: str
    category_id: str
    category_name: str
    location_id: str
    location_name: str
    location_kind: str
    authority_id: str
    authority_name: str
    created_at: str
    updated_at: str
    report_count: int
    priority: PrioritySnapshot | None
    frequency: FrequencyInfo | None
    routing_suggestion: dict[str, str]
    reports: list[LinkedReport]


class IssueSummary(BaseModel):
    id: str
    status: str
    category_id: str
    category_name: str
    location_id: str
    location_name: str
    authority_id: str
    authority_name: str
    report_count: int
    current_priority: float | None
    priority_level: str
    created_at: str
    updated_at: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class IssueListResponse(BaseModel):
    items: list[IssueSummary]
    pagination: Pagination


class AdminActionRequest(BaseModel):
    action_type: Literal["assign", "override_priority", "resolve", "reopen", "change_status"]
    admin_ref: str = Field(min_length=1)
    new_value: dict[str, Any] | None = None
    notes: str | None = None


class AdminActionResponse(BaseModel):
    id: str
    group_id: str
    action_type: str
    previous_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    notes: str | None


class Authority(BaseModel):
    id: str
    name: str
    description: str | None


class AuthoritiesResponse(BaseModel):
    authorities: list[Authority]
    count: int


# --- Helpers ---


def _sse(event) -> str:
    return f"data: {json.dumps(event.to_dict())}\n\n"


def _raise_http(exc: IntakeError):
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AggregationConflict):
        raise HTTPException(status_code=409, detail=str(exc))
    logger.error("Intake request failed: %s", exc)
    raise HTTPException(status_code=500, detail=str(exc))


# --- Endpoints ---


@router.post("/api/reports/stream")
def submit_report_stream(body: ReportRequest):
    """Submit a report and receive pipeline progress as Server-Sent Events."""
    events = stream_report(body.to_submission())
    return StreamingResponse(
        (_sse(event) for event in events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/api/reports", response_model=ReportResponse)
def submit_report(body: ReportRequest):
    """Submit a report and wait for the final result."""
    result = process_report(body.to_submission())
    if result.error_stage == "validating":
        raise HTTPException(status_code=400, detail=result.message)
    if result.error_stage:
        raise HTTPException(
            status_code=500,
            detail={"message": result.message, "stage": result.error_stage},
        )

    complete = result.events[-1].data or {}
    return ReportResponse(
        status=result.status,
        message=result.message,
        report_id=result.report_id,
        group_id=result.group_id,
        aggregation_status=complete.get("aggregation_status"),
        initial_priority=result.total_score,
        priority_level=result.priority_level,
        urgency_level=complete.get("urgency_level"),
        requires_immediate_action=complete.get("requires_immediate_action"),
        authority_name=result.authority_name,
    )


@router.get("/api/issues", response_model=IssueListResponse)
def list_issue_groups(
    status: str = Query("active", description="active, all, or comma-separated statuses"),
    category_id: str | None = Query(None, description="Filter by category"),
    location_id: str | None = Query(None, description="Filter by location"),
    authority_id: str | None = Query(None, description="Filter by assigned authority"),
    page: int = Query(1, ge=1),
    limit: int = Query(admin.DEFAULT_PAGE_SIZE, ge=1, le=admin.MAX_PAGE_SIZE),
):
    """List issue groups, highest current priority first."""
    try:
        rows, total = admin.list_issues(
            status,
            category_id=category_id,
            location_id=location_id,
            authority_id=authority_id,
            page=page,
            limit=limit,
        )
    except IntakeError as exc:
        _raise_http(exc)
    return IssueListResponse(
        items=[IssueSummary(**{k: row[k] for k in IssueSummary.model_fields}) for row in rows],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit),
        ),
    )


@router.get("/api/issues/{group_id}", response_model=IssueGroupResponse)
def get_issue_group(group_id: str):
    """Get an issue group with its reports, latest priority and frequency."""
    try:
        group = db_helpers.get_group(group_id)
        if not group:
            raise HTTPException(status_code=404, detail="Issue not found")

        snapshot = db_helpers.get_latest_priority_snapshot(group_id)
        sample = get_latest_frequency_sample(group_id)
        reports = get_linked_reports(group_id)
        report_count = get_report_count(group_id)
    except IntakeError as exc:
        _raise_http(exc)

    priority = None
    if snapshot:
        priority = PrioritySnapshot(
            total_score=snapshot["total_score"],
            priority_level=priority_level(snapshot["total_score"]),
            urgency_component=snapshot["urgency_component"],
            impact_component=snapshot["impact_component"],
            frequency_component=snapshot["frequency_component"],
            environmental_component=snapshot["environmental_component"],
            raw_score=snapshot["raw_score"],
            confidence_multiplier=snapshot["confidence_multiplier"],
            is_manual=bool(snapshot["is_manual"]),
            reason=snapshot["reason"],
            computed_at=snapshot["computed_at"],
        )

    frequency = None
    if sample:
        frequency = FrequencyInfo(
            report_count=sample.report_count,
            window_minutes=sample.window_minutes,
            label=format_frequency(sample.report_count, sample.window_minutes),
            is_high=is_high_frequency(sample.report_count),
            computed_at=sample.computed_at,
        )

    return IssueGroupResponse(
        id=group["id"],
        status=group["status"],
        category_id=group["category_id"],
        category_name=group["category_name"],
        location_id=group["location_id"],
        location_name=group["location_name"],
        location_kind=group["location_kind"],
        authority_id=group["authority_id"],
        authority_name=group["authority_name"],
        created_at=group["created_at"],
        updated_at=group["updated_at"],
        report_count=report_count,
        priority=priority,
        frequency=frequency,
        routing_suggestion=get_routing_suggestion(group["category_name"], group["location_kind"]),
        reports=[LinkedReport(**r) for r in reports],
    )


@router.post("/api/issues/{group_id}/action", response_model=AdminActionResponse)
def post_issue_action(group_id: str, body: AdminActionRequest):
    """Run an administrator command on an issue group."""
    try:
        action = admin.apply_action(
            group_id,
            body.action_type,
            body.admin_ref,
            new_value=body.new_value,
            notes=body.notes,
        )
    except IntakeError as exc:
        _raise_http(exc)
    return AdminActionResponse(**action)


@router.get("/api/authorities", response_model=AuthoritiesResponse)
def get_authorities():
    """List the authority directory."""
    try:
        rows = db_helpers.list_authorities()
    except IntakeError as exc:
        _raise_http(exc)
    return AuthoritiesResponse(
        authorities=[Authority(**row) for row in rows],
        count=len(rows),
    )
