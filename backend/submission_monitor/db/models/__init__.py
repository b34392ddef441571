"""Re-export all models so Base.metadata sees them."""

from submission_monitor.db.models.health_check_record import HealthCheckRecord
from submission_monitor.db.models.progress_event import ProgressEvent
from submission_monitor.db.models.retry_task import RetryTask
from submission_monitor.db.models.submission import Submission
from submission_monitor.db.models.submission_snapshot import SubmissionSnapshot

__all__ = [
    "HealthCheckRecord",
    "ProgressEvent",
    "RetryTask",
    "Submission",
    "SubmissionSnapshot",
]
