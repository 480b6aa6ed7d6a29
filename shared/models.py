from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.enums import (
    Capability,
    CompletionMode,
    CompletionOutcome,
    DeadLetterKind,
    ErrorClass,
    EventType,
    FailurePolicy,
    HandleState,
    JobStatus,
    ReviewDecision,
    TransactionStatus,
    WorkflowStage,
)


class RecordView(BaseModel):
    """Read-only view built from an ORM record."""

    model_config = ConfigDict(from_attributes=True)


class TransactionView(RecordView):
    transaction_id: str
    job_id: str
    status: TransactionStatus
    source_ref: str
    results: dict[str, Any] = Field(default_factory=dict)
    consolidated_result: dict[str, Any] | None = None
    error_detail: dict[str, Any] | None = None
    version: int
    created_at: datetime
    updated_at: datetime | None = None


class StatusChange(RecordView):
    entity_type: str
    entity_id: str
    from_status: str | None = None
    to_status: str
    detail: dict[str, Any] | None = None
    created_at: datetime


class JobView(RecordView):
    job_id: str
    owner_id: str
    label: str | None = None
    status: JobStatus
    capabilities: list[Capability]
    failure_policy: FailurePolicy
    total_transactions: int
    completed_transactions: int
    failed_transactions: int
    pending_operations: int
    pending_reviews: int
    version: int
    error_detail: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    transactions: list[TransactionView] = Field(default_factory=list)
    history: list[StatusChange] | None = None


class JobSummary(RecordView):
    job_id: str
    owner_id: str
    label: str | None = None
    status: JobStatus
    total_transactions: int
    completed_transactions: int
    failed_transactions: int
    created_at: datetime


class JobPage(BaseModel):
    items: list[JobSummary]
    next_cursor: str | None = None


class ProviderOperationHandle(RecordView):
    """One outstanding asynchronous provider call."""

    handle_id: str
    provider_operation_id: str | None = None
    job_id: str
    transaction_id: str
    capability: Capability
    stage: WorkflowStage
    completion_mode: CompletionMode
    continuation_token: str
    state: HandleState
    attempt: int
    payload_ref: str
    issued_at: datetime
    deadline_at: datetime
    consumed_at: datetime | None = None
    outcome: dict[str, Any] | None = None


class Continuation(RecordView):
    token: str
    job_id: str
    transaction_id: str | None = None
    stage: WorkflowStage
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    consumed_at: datetime | None = None


class ReviewCase(RecordView):
    case_id: str
    job_id: str
    transaction_id: str
    proposed_result: dict[str, Any] = Field(default_factory=dict)
    confidence: float
    decision: ReviewDecision
    final_result: dict[str, Any] | None = None
    reviewer: str | None = None
    escalation_level: int
    continuation_token: str
    created_at: datetime
    decided_at: datetime | None = None


class DeadLetter(RecordView):
    dead_letter_id: str
    kind: DeadLetterKind
    reference_id: str
    job_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    error_class: ErrorClass
    error_detail: dict[str, Any] | None = None
    attempts: int
    acknowledged: bool
    created_at: datetime
    acknowledged_at: datetime | None = None


class TransactionChange(BaseModel):
    """Mutation applied to a transaction inside an atomic store operation."""

    status: TransactionStatus | None = None
    results: dict[str, Any] | None = None
    consolidated_result: dict[str, Any] | None = None
    error_detail: dict[str, Any] | None = None


class SettleResult(BaseModel):
    """Outcome of settling a continuation."""

    applied: bool
    remaining: int = 0
    job_status: JobStatus | None = None
    transaction: TransactionView | None = None


class ProviderResult(BaseModel):
    """Provider output normalized across capabilities."""

    result_ref: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    detail: dict[str, Any] = Field(default_factory=dict)


class CompletionReceipt(BaseModel):
    provider_operation_id: str
    accepted: bool
    duplicate: bool = False
    deferred: bool = False
    reason: str | None = None


class NotificationEvent(BaseModel):
    job_id: str
    event_type: EventType
    timestamp: datetime
    detail: dict[str, Any] = Field(default_factory=dict)


# Request/Response Models
class CreateJobRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, description="Identity of the submitting caller")
    capabilities: list[Capability] = Field(..., min_length=1, description="Requested processing capabilities")
    file_refs: list[str] = Field(..., min_length=1, description="Opaque source references, one per transaction")
    label: str | None = Field(None, max_length=255, description="Human readable label")
    failure_policy: FailurePolicy | None = Field(None, description="partial or fail_fast; defaults from config")
    start: bool = Field(default=False, description="Start processing immediately")

    @field_validator("file_refs")
    @classmethod
    def _non_blank_refs(cls, value: list[str]) -> list[str]:
        if any(not ref.strip() for ref in value):
            raise ValueError("file_refs must not contain blank references")
        return value


class CreateJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    transaction_ids: list[str]


class CompletionRequest(BaseModel):
    provider_operation_id: str = Field(..., min_length=1)
    outcome: CompletionOutcome
    result_ref: str | None = None
    error: dict[str, Any] | str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    detail: dict[str, Any] | None = None
    client_reference: str | None = None


class ReviewDecisionRequest(BaseModel):
    decision: ReviewDecision
    final_result: dict[str, Any] | None = None
    reviewer: str | None = None

    @field_validator("decision")
    @classmethod
    def _not_pending(cls, value: ReviewDecision) -> ReviewDecision:
        if value in (ReviewDecision.PENDING, ReviewDecision.CANCELLED):
            raise ValueError(f"'{value.value}' is not a reviewer decision")
        return value


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    success: bool = Field(default=True, description="Whether the operation was successful")
    message: str = Field(default="Operation completed successfully", description="Response message")
    data: dict[str, Any] | None = Field(None, description="Response data")
