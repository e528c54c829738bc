"""Intake pipeline runner: sequences triage, aggregation, scoring and routing.

Stage order per report:

    validating -> triaging -> aggregating -> scoring -> routing -> persisting
    -> complete | error

Every run ends with exactly one terminal event. Spam and policy rejections
end in ``complete`` with a non-accepted status, because they are answers to
the reporter and not failures. Rows committed before a fatal error stay
committed.
"""

import logging
import queue
import threading
from collections.abc import Callable, Iterator

from src.intake import db_helpers
from src.intake.errors import AutomationError, IntakeError, NotFoundError, ValidationError
from src.intake.models import (
    STAGE_PROGRESS,
    STATUS_ACCEPTED,
    STATUS_ERROR,
    Classification,
    PipelineResult,
    ProgressEvent,
    ReportSubmission,
    default_classification,
)
from src.intake.pipeline import spam_gate
from src.intake.pipeline.aggregator import aggregate_report
from src.intake.pipeline.classifier import TriageAdapter
from src.intake.pipeline.frequency import (
    count_recent,
    get_latest_frequency_sample,
    record_frequency_sample,
)
from src.intake.pipeline.priority import (
    DEFAULT_WEIGHTS,
    PriorityBreakdown,
    PriorityInput,
    PriorityWeights,
    compute_priority,
)
from src.intake.pipeline.routing import DEFAULT_ROUTING_TABLE, RoutingResult, RoutingTable, route

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 20

STAGE_MESSAGES = {
    "validating": "Validating report...",
    "triaging": "Analyzing report...",
    "aggregating": "Checking for related reports...",
    "scoring": "Calculating priority...",
    "routing": "Routing to the responsible authority...",
    "persisting": "Saving results...",
}


def validate_submission(submission: ReportSubmission) -> tuple[dict, dict]:
    """Check caller input. Returns the (category, location) rows.

    Raises:
        ValidationError: Input is malformed or references unknown rows.
    """
    title = (submission.title or "").strip()
    description = (submission.description or "").strip()

    if len(title) < MIN_TITLE_LENGTH:
        raise ValidationError(f"Title must be at least {MIN_TITLE_LENGTH} characters")
    if len(description) < MIN_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters")
    if not submission.category_id or not submission.location_id:
        raise ValidationError("Category and location are required")
    if not (submission.reporter_ref or "").strip():
        raise ValidationError("Reporter reference is required")

    category = db_helpers.get_category(submission.category_id)
    if not category:
        raise ValidationError("Invalid category")
    location = db_helpers.get_location(submission.location_id)
    if not location or not location["is_active"]:
        raise ValidationError("Invalid location")
    return category, location


def _group_priority_input(
    classifications: list[Classification],
    report_count: int,
    reports_in_window: int,
    category_environmental: bool = False,
) -> PriorityInput:
    """Combine every linked report's classification into one scoring input.

    Urgency and confidence are averaged. Impact is multi if any single report
    says so. The group is environmental if its category is, or if any report
    says so.
    """
    if not classifications:
        raise NotFoundError("No classified reports linked to group")
    n = len(classifications)
    return PriorityInput(
        urgency_score=sum(c.urgency_score for c in classifications) / n,
        impact_scope="multi" if any(c.impact_scope == "multi" for c in classifications) else "single",
        is_environmental=category_environmental or any(c.environmental_flag for c in classifications),
        confidence_score=sum(c.confidence_score for c in classifications) / n,
        report_count=report_count,
        reports_in_window=reports_in_window,
    )


def _snapshot(group_id: str, breakdown: PriorityBreakdown, reason: str) -> str:
    return db_helpers.insert_priority_snapshot(
        group_id,
        total_score=breakdown.total_score,
        components=breakdown.components(),
        raw_score=breakdown.raw_score,
        confidence_multiplier=breakdown.confidence_multiplier,
        reason=reason,
    )


def _classify(adapter: TriageAdapter, title: str, description: str) -> tuple[Classification, str | None, str | None]:
    """Triage with fallback. Returns (classification, model, raw_output)."""
    try:
        classification, raw = adapter.classify_with_raw(title, description)
    except AutomationError as exc:
        logger.warning("Triage failed, using default classification: %s", exc)
        return default_classification(f"Automated triage unavailable: {exc}"), None, None
    return classification, adapter.model, raw


def process_report(
    submission: ReportSubmission,
    on_progress: Callable[[ProgressEvent], None] | None = None,
    adapter: TriageAdapter | None = None,
    weights: PriorityWeights = DEFAULT_WEIGHTS,
    routing_table: RoutingTable = DEFAULT_ROUTING_TABLE,
) -> PipelineResult:
    """Run one report through the pipeline. Always returns, never raises.

    Args:
        submission: The report to process.
        on_progress: Called with each ProgressEvent in order. Exceptions it
            raises are logged and ignored so a broken listener cannot stop
            processing.
        adapter: Triage adapter. Defaults to the Anthropic-backed one.
        weights: Priority scoring constants.
        routing_table: Routing rules.
    """
    result = PipelineResult(status=STATUS_ERROR, message="")

    def emit(stage: str, message: str | None = None, data: dict | None = None) -> None:
        event = ProgressEvent(
            stage=stage,
            progress=STAGE_PROGRESS[stage],
            message=message or STAGE_MESSAGES.get(stage, ""),
            data=data,
        )
        result.events.append(event)
        if on_progress is None:
            return
        try:
            on_progress(event)
        except Exception:
            logger.exception("Progress listener failed on stage %s", stage)

    def finish(status: str, message: str, data: dict | None = None) -> PipelineResult:
        result.status = status
        result.message = message
        emit("complete", message, {"status": status, "message": message, **(data or {})})
        return result

    stage = "validating"
    try:
        emit(stage)
        category, location = validate_submission(submission)

        # Obvious junk is turned away before spending a provider call on it
        pre_check = spam_gate.evaluate(submission.title, submission.description)
        if not pre_check.accepted:
            return finish(pre_check.status, pre_check.message, {"reason": pre_check.reason})

        stage = "triaging"
        emit(stage)
        adapter = adapter or TriageAdapter()
        classification, model, raw_output = _classify(adapter, submission.title, submission.description)
        result.classification = classification

        decision = spam_gate.evaluate(submission.title, submission.description, classification)
        if not decision.accepted:
            return finish(decision.status, decision.message, {"reason": decision.reason})

        stage = "aggregating"
        emit(stage)
        report = db_helpers.insert_report(submission)
        result.report_id = report["id"]
        db_helpers.upsert_classification(report["id"], classification, model=model, raw_output=raw_output)
        aggregation = aggregate_report(report["id"], submission.category_id, submission.location_id)
        result.group_id = aggregation.group_id
        result.is_new_group = aggregation.is_new

        stage = "scoring"
        emit(stage)
        sample = record_frequency_sample(aggregation.group_id)
        linked = db_helpers.get_group_classifications(aggregation.group_id)
        breakdown = compute_priority(
            _group_priority_input(
                linked, len(linked), sample.report_count, bool(category["is_environmental"])
            ),
            weights,
        )
        result.total_score = breakdown.total_score
        result.priority_level = breakdown.priority_level

        stage = "routing"
        emit(stage)
        if aggregation.is_new:
            routing = route(category["name"], location["kind"], routing_table)
            db_helpers.update_group_authority(aggregation.group_id, routing.authority_id)
            authority_name = routing.authority_name
            logger.info(
                "Routed group %s to %s: %s",
                aggregation.group_id,
                routing.authority_name,
                routing.reason,
            )
        else:
            # Existing groups keep their (possibly admin-assigned) authority
            group = db_helpers.get_group(aggregation.group_id)
            authority_name = group["authority_name"] if group else None
        result.authority_name = authority_name

        stage = "persisting"
        emit(stage)
        _snapshot(aggregation.group_id, breakdown, "Computed on report submission")

        return finish(
            STATUS_ACCEPTED,
            "Report submitted successfully",
            {
                "report_id": report["id"],
                "group_id": aggregation.group_id,
                "aggregation_status": "new" if aggregation.is_new else "linked",
                "initial_priority": breakdown.total_score,
                "priority_level": breakdown.priority_level,
                "priority_breakdown": breakdown.to_dict(),
                "urgency_level": classification.urgency_level,
                "requires_immediate_action": classification.requires_immediate_action,
                "reporter_welfare_flag": classification.reporter_welfare_flag,
                "authority_name": authority_name,
            },
        )

    except IntakeError as exc:
        exc.stage = stage
        log = logger.info if isinstance(exc, ValidationError) else logger.error
        log("Pipeline failed at %s: %s", stage, exc, extra={"stage": stage, "error_type": type(exc).__name__})
        result.status = STATUS_ERROR
        result.message = str(exc)
        result.error_stage = stage
        emit("error", str(exc), {"stage": stage, "error_type": type(exc).__name__})
        return result
    except Exception as exc:
        logger.exception("Unexpected pipeline failure at %s", stage)
        result.status = STATUS_ERROR
        result.message = "Failed to process report"
        result.error_stage = stage
        emit("error", result.message, {"stage": stage, "error_type": type(exc).__name__})
        return result


def stream_report(submission: ReportSubmission, **kwargs) -> Iterator[ProgressEvent]:
    """Run ``process_report`` on a worker thread and yield its events.

    The iterator ends after the terminal event. If the consumer stops early
    the worker keeps going and the report is still fully processed.
    """
    events: queue.Queue[ProgressEvent] = queue.Queue()

    def _run() -> None:
        process_report(submission, on_progress=events.put, **kwargs)

    worker = threading.Thread(target=_run, name="intake-pipeline")
    worker.start()

    while True:
        event = events.get()
        yield event
        if event.is_terminal:
            return


def recalculate_priority(
    group_id: str, weights: PriorityWeights = DEFAULT_WEIGHTS
) -> PriorityBreakdown:
    """Rescore a group from all of its linked reports and append a snapshot.

    Raises:
        NotFoundError: Unknown group, or the group has no classified reports.
    """
    group = db_helpers.get_group(group_id)
    if not group:
        raise NotFoundError(f"Issue group not found: {group_id}")
    category = db_helpers.get_category(group["category_id"])
    classifications = db_helpers.get_group_classifications(group_id)
    sample = get_latest_frequency_sample(group_id)
    in_window = sample.report_count if sample else count_recent(group_id)
    breakdown = compute_priority(
        _group_priority_input(
            classifications,
            len(classifications),
            in_window,
            bool(category and category["is_environmental"]),
        ),
        weights,
    )
    _snapshot(group_id, breakdown, f"Recalculated from {len(classifications)} linked report(s)")
    logger.info("Recalculated priority for group %s: %.2f", group_id, breakdown.total_score)
    return breakdown


def reprocess_report(
    report_id: str,
    adapter: TriageAdapter | None = None,
    weights: PriorityWeights = DEFAULT_WEIGHTS,
) -> PriorityBreakdown:
    """Re-run triage for a stored report, replace its classification and rescore its group.

    Raises:
        NotFoundError: Unknown report, or report not linked to a group.
    """
    report = db_helpers.get_report(report_id)
    if not report:
        raise NotFoundError(f"Report not found: {report_id}")
    group_id = db_helpers.get_report_group_id(report_id)
    if not group_id:
        raise NotFoundError(f"Report {report_id} is not linked to a group")

    classification, model, raw_output = _classify(
        adapter or TriageAdapter(), report["title"], report["description"]
    )
    db_helpers.upsert_classification(report_id, classification, model=model, raw_output=raw_output)
    logger.info("Reprocessed report %s (category=%s)", report_id, classification.category)
    return recalculate_priority(group_id, weights)


def reroute_group(group_id: str, routing_table: RoutingTable = DEFAULT_ROUTING_TABLE) -> RoutingResult:
    """Re-apply routing rules to an existing group and store the new authority.

    Raises:
        NotFoundError: Unknown group.
        RoutingError: Routed authority missing from the directory.
    """
    group = db_helpers.get_group(group_id)
    if not group:
        raise NotFoundError(f"Issue group not found: {group_id}")
    routing = route(group["category_name"], group["location_kind"], routing_table)
    if routing.authority_id != group["authority_id"]:
        db_helpers.update_group_authority(group_id, routing.authority_id)
        logger.info("Rerouted group %s to %s", group_id, routing.authority_name)
    return routing
