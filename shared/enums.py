"""
Enums and constants used across the orchestration backend.
"""

from enum import Enum


class Capability(str, Enum):
    """Processing capabilities a provider can fulfil."""

    OCR = "ocr"
    TRANSCRIPTION = "transcription"
    CLASSIFICATION = "classification"
    VIDEO_ANALYSIS = "video_analysis"
    TRANSLATION = "translation"
    PII_REDACTION = "pii_redaction"
    ARCHIVE = "archive"


# Capabilities a caller may request on a job. ARCHIVE only runs as a post-step.
REQUESTABLE_CAPABILITIES = frozenset(
    {
        Capability.OCR,
        Capability.TRANSCRIPTION,
        Capability.CLASSIFICATION,
        Capability.VIDEO_ANALYSIS,
        Capability.TRANSLATION,
        Capability.PII_REDACTION,
    }
)


class CompletionMode(str, Enum):
    """How a provider signals that an operation finished."""

    CALLBACK = "callback"
    POLL = "poll"


class JobStatus(str, Enum):
    """Workflow state of a job."""

    CREATED = "created"
    DISPATCHED = "dispatched"
    AWAITING_PROVIDERS = "awaiting_providers"
    CONSOLIDATING = "consolidating"
    AWAITING_REVIEW = "awaiting_review"
    POST_PROCESSING = "post_processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class TransactionStatus(str, Enum):
    """Per-file status. Only moves forward except through an explicit retry."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    PROVIDER_COMPLETE = "provider_complete"
    IN_REVIEW = "in_review"
    REVIEWED = "reviewed"
    POST_PROCESSING = "post_processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSACTION_STATUS_RANK = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.DISPATCHED: 1,
    TransactionStatus.PROVIDER_COMPLETE: 2,
    TransactionStatus.IN_REVIEW: 3,
    TransactionStatus.REVIEWED: 4,
    TransactionStatus.POST_PROCESSING: 5,
    TransactionStatus.SUCCEEDED: 6,
    TransactionStatus.FAILED: 6,
    TransactionStatus.CANCELLED: 6,
}

TERMINAL_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.SUCCEEDED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)

# Status a failed transaction is reset to by an explicit retry.
RETRY_ENTRY_STATUS = TransactionStatus.PENDING


class HandleState(str, Enum):
    """Lifecycle of a provider operation handle."""

    LIVE = "live"
    CONSUMED = "consumed"
    SETTLED = "settled"
    INVALIDATED = "invalidated"
    CANCELLED = "cancelled"


class WorkflowStage(str, Enum):
    """Stage a suspended continuation resumes into."""

    AWAITING_PROVIDERS = "awaiting_providers"
    AWAITING_REVIEW = "awaiting_review"
    POST_PROCESSING = "post_processing"


class CompletionOutcome(str, Enum):
    """Outcome reported by a provider for an operation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNAVAILABLE = "unavailable"


TRANSIENT_OUTCOMES = frozenset({CompletionOutcome.TIMED_OUT, CompletionOutcome.UNAVAILABLE})


class ReviewDecision(str, Enum):
    """Decision state of a review case."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class ErrorClass(str, Enum):
    """Retry classification of an error."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class FailurePolicy(str, Enum):
    """What a single transaction failure does to its job."""

    PARTIAL = "partial"
    FAIL_FAST = "fail_fast"


class DeadLetterKind(str, Enum):
    """Unit of work that ended up quarantined."""

    DISPATCH = "dispatch"
    COMPLETION = "completion"
    POST_STEP = "post_step"
    NOTIFICATION = "notification"


class EventType(str, Enum):
    """Notification event types emitted to the audit sink."""

    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    REVIEW_CASE_CREATED = "review_case_created"
    QUARANTINED = "quarantined"
