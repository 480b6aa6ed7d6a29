"""Orchestration service API endpoints for document and video processing jobs."""

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from services.events import CompletionEventRouter
from services.orchestrator import WorkflowOrchestrator
from services.watchdog import BackgroundScheduler, TimeoutWatchdog
from shared.enums import JobStatus
from shared.errors import ConflictError, NotFoundError, OrchestrationError, ProviderError, ValidationError
from shared.models import (
    APIResponse,
    CompletionReceipt,
    CompletionRequest,
    CreateJobRequest,
    CreateJobResponse,
    DeadLetter,
    JobPage,
    JobView,
    ReviewCase,
    ReviewDecisionRequest,
    TransactionView,
)
from shared.utils import config, setup_logging

logger = setup_logging("orchestration-service")

app = FastAPI(
    title="Orchestration Service",
    description="Job and transaction orchestration for document and video AI processing",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get("allowed_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize orchestration components
orchestrator = WorkflowOrchestrator()
completion_router = CompletionEventRouter(orchestrator)
watchdog = TimeoutWatchdog(completion_router, orchestrator)
scheduler = BackgroundScheduler(watchdog)


def _http_error(exc: OrchestrationError) -> HTTPException:
    """Map the orchestration error taxonomy onto HTTP status codes."""
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, ProviderError):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=exc.to_dict())


async def start_background_tasks() -> None:
    if config.get("scheduler_enabled", True):
        scheduler.start()


async def stop_background_tasks() -> None:
    await scheduler.stop()


@app.get("/health")
async def health_check():
    """Health check endpoint for the orchestration service."""
    return APIResponse(
        message="Orchestration Service is healthy",
        data={"scheduler_running": scheduler.running},
    )


@app.post("/jobs", response_model=CreateJobResponse, status_code=201)
async def create_job(request: CreateJobRequest) -> CreateJobResponse:
    """Create a job with one transaction per file reference.

    With ``start`` set, every (transaction, capability) pair is dispatched
    before the response is returned.
    """
    try:
        job_id = orchestrator.create_job(
            request.owner_id,
            request.capabilities,
            request.file_refs,
            label=request.label,
            failure_policy=request.failure_policy,
        )
        job = await orchestrator.start_job(job_id) if request.start else orchestrator.get_job(job_id)
    except OrchestrationError as e:
        logger.warning(f"Job creation rejected: {e}")
        raise _http_error(e) from e

    return CreateJobResponse(
        job_id=job.job_id,
        status=job.status,
        transaction_ids=[transaction.transaction_id for transaction in job.transactions],
    )


@app.post("/jobs/{job_id}/start", response_model=JobView)
async def start_job(job_id: str) -> JobView:
    try:
        return await orchestrator.start_job(job_id)
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.get("/jobs/{job_id}", response_model=JobView)
async def get_job(job_id: str, include_history: bool = False) -> JobView:
    """Best known status of a job with per-transaction detail."""
    try:
        return orchestrator.get_job(job_id, include_history=include_history)
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.get("/jobs", response_model=JobPage)
async def list_jobs(
    status: JobStatus,
    cursor: str | None = None,
    limit: int | None = Query(None, ge=1, le=500),
) -> JobPage:
    try:
        return orchestrator.list_jobs(status, cursor=cursor, limit=limit)
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.post("/jobs/{job_id}/cancel", response_model=JobView)
async def cancel_job(job_id: str) -> JobView:
    try:
        return await orchestrator.cancel_job(job_id)
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    try:
        await orchestrator.delete_job(job_id)
    except OrchestrationError as e:
        raise _http_error(e) from e
    return APIResponse(message=f"Job {job_id} deleted")


@app.post("/transactions/{transaction_id}/retry", response_model=TransactionView)
async def retry_transaction(transaction_id: str) -> TransactionView:
    """Re-run a failed transaction from the provider stage."""
    try:
        return await orchestrator.retry_transaction(transaction_id)
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.post("/review-cases/{case_id}/decision", response_model=ReviewCase)
async def submit_review_decision(case_id: str, request: ReviewDecisionRequest) -> ReviewCase:
    try:
        return await orchestrator.review_gate.submit_decision(
            case_id,
            request.decision,
            final_result=request.final_result,
            reviewer=request.reviewer,
        )
    except OrchestrationError as e:
        raise _http_error(e) from e


@app.get("/review-cases", response_model=list[ReviewCase])
async def list_review_cases(job_id: str | None = None, pending_only: bool = True) -> list[ReviewCase]:
    gate = orchestrator.review_gate
    return gate.list_pending(job_id) if pending_only else gate.list_cases(job_id)


@app.post("/completions", response_model=CompletionReceipt, status_code=202)
async def receive_completion(request: CompletionRequest) -> CompletionReceipt:
    """Provider callback. Unknown and duplicate completions are acknowledged as no-ops.

    A completion that races ahead of its own submit is answered with 503 so
    the provider delivers it again.
    """
    try:
        receipt = await completion_router.submit(request)
    except OrchestrationError as e:
        logger.error(f"Completion for {request.provider_operation_id} failed: {e}")
        raise _http_error(e) from e
    if not receipt.accepted:
        raise HTTPException(status_code=503, detail=receipt.model_dump(mode="json"), headers={"Retry-After": "5"})
    return receipt


@app.get("/dead-letters", response_model=list[DeadLetter])
async def list_dead_letters(job_id: str | None = None, include_acknowledged: bool = False) -> list[DeadLetter]:
    return orchestrator.dead_letters.list(acknowledged=None if include_acknowledged else False, job_id=job_id)


@app.post("/dead-letters/{dead_letter_id}/acknowledge", response_model=DeadLetter)
async def acknowledge_dead_letter(dead_letter_id: str) -> DeadLetter:
    try:
        return orchestrator.dead_letters.acknowledge(dead_letter_id)
    except OrchestrationError as e:
        raise _http_error(e) from e
