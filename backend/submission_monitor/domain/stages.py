"""Pipeline stage and status enums with human-readable labels.

Pure domain logic with no external dependencies.
"""
from enum import Enum

from submission_monitor.core.exceptions import ValidationError


class SubmissionStage(str, Enum):
    """Named steps a submission passes through, in pipeline order."""

    SUBMISSION_CREATED = "submission_created"
    DOCUMENT_GENERATION = "document_generation"
    REVIEW_PREPARATION = "review_preparation"
    REVIEW = "review"
    COUNCIL_DELIVERY = "council_delivery"
    INTEGRATION_SYNC = "integration_sync"


class ProgressStatus(str, Enum):
    """Status carried by a single progress event."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Overall submission statuses still moving through the pipeline
ACTIVE_STATUSES = frozenset({ProgressStatus.PENDING.value, ProgressStatus.IN_PROGRESS.value})

STAGE_LABELS: dict[str, str] = {
    "submission_created": "Submission received",
    "document_generation": "Generating documents",
    "review_preparation": "Preparing review",
    "review": "Awaiting review",
    "council_delivery": "Delivering to council",
    "integration_sync": "Syncing with campaign platform",
}

STATUS_LABELS: dict[str, str] = {
    "pending": "Pending",
    "in_progress": "In progress",
    "completed": "Completed",
    "failed": "Failed",
}


def parse_stage(value: str | SubmissionStage) -> SubmissionStage:
    """Coerce a raw stage value, raising ValidationError for unknown stages."""
    try:
        return SubmissionStage(value)
    except ValueError:
        raise ValidationError(f"Unknown stage: {value!r}") from None


def parse_status(value: str | ProgressStatus) -> ProgressStatus:
    """Coerce a raw status value, raising ValidationError for unknown statuses."""
    try:
        return ProgressStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown status: {value!r}") from None


def stage_label(stage: str) -> str:
    return STAGE_LABELS.get(stage, stage.replace("_", " ").capitalize())


def status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status.replace("_", " ").capitalize())


def stale_threshold_for(
    stage: str | None,
    thresholds: dict[str, int],
    default_minutes: int,
) -> int:
    """Return the inactivity threshold (minutes) configured for a stage."""
    if stage is None:
        return default_minutes
    return thresholds.get(stage, default_minutes)
