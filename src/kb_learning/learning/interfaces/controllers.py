"""
Learning Controllers (API Routes)
==================================

FastAPI routes for the learning queue, batch runs and analytics.

Controllers are thin - they delegate to application services held on
app.state by the lifespan handler.
"""

import time
from typing import List

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request, status

from kb_learning.core import ResourceNotFoundException, ValidationException
from kb_learning.learning.application import (
    BatchLearningService,
    BatchProcessRequest,
    CategoryCount,
    EnqueueResponse,
    IResolvedTicketRepository,
    ISynthesisFailureRepository,
    LearningAnalyticsResponse,
    LearningAnalyticsService,
    LearningQueueManager,
    LearningRunResponse,
    QueueStatusResponse,
    SynthesisFailureResponse,
)
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
queue_router = APIRouter(prefix="/learning-queue", tags=["Learning Queue"])
router = APIRouter(prefix="/learning", tags=["Learning Pipeline"])


# ========== Example payloads for Swagger ==========

QUEUE_STATUS_EXAMPLE = {
    "pending": 4,
    "processing": 1,
    "completedToday": 27,
    "failed": 2
}

BATCH_REQUEST_EXAMPLE = {
    "start": "2024-01-01T00:00:00Z",
    "end": "2024-02-01T00:00:00Z",
    "ticketIds": None
}

BATCH_RESPONSE_EXAMPLE = {
    "runId": "5b0f4a1e-2d1c-4c55-9d6e-3f0d2f1b7a10",
    "ticketCount": 12,
    "patternsFound": 3,
    "articlesCreated": 3,
    "articlesPublished": 3,
    "duplicatesSkipped": 0,
    "failures": 0,
    "rangeStart": "2024-01-01T00:00:00Z",
    "rangeEnd": "2024-02-01T00:00:00Z",
    "startedAt": "2024-02-01T09:00:00Z",
    "completedAt": "2024-02-01T09:00:41Z"
}

ANALYTICS_RESPONSE_EXAMPLE = {
    "articlesCreated": 42,
    "avgEffectiveness": 0.81,
    "autoResponsesSent": 130,
    "ticketsResolvedByAI": 97,
    "topCategories": [
        {"category": "authentication", "count": 12},
        {"category": "billing", "count": 9}
    ],
    "malformedOutputs": 1
}


# ========== Dependencies ==========

def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not initialized"
        )
    return service


def get_queue_manager(request: Request) -> LearningQueueManager:
    return _state(request, "queue_manager")


def get_ticket_repository(request: Request) -> IResolvedTicketRepository:
    return _state(request, "ticket_repository")


def get_batch_service(request: Request) -> BatchLearningService:
    return _state(request, "batch_service")


def get_analytics_service(request: Request) -> LearningAnalyticsService:
    return _state(request, "analytics_service")


def get_failure_repository(request: Request) -> ISynthesisFailureRepository:
    return _state(request, "failure_repository")


# ========== Learning queue ==========

@queue_router.get(
    "/status",
    response_model=QueueStatusResponse,
    response_model_by_alias=True,
    summary="Learning queue counters",
    description="""
    Current learning queue counters.

    - **pending**: waiting for the worker (including scheduled retries)
    - **processing**: claimed by a worker
    - **completedToday**: completed since UTC midnight
    - **failed**: terminally failed, kept for review
    """,
    responses={
        200: {
            "description": "Queue counters",
            "content": {"application/json": {"example": QUEUE_STATUS_EXAMPLE}}
        }
    }
)
async def get_queue_status(queue: LearningQueueManager = Depends(get_queue_manager)):
    summary = await queue.status()
    return QueueStatusResponse(
        pending=summary.pending,
        processing=summary.processing,
        completed_today=summary.completed_today,
        failed=summary.failed,
    )


@queue_router.post(
    "/{ticket_id}",
    response_model=EnqueueResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a resolved ticket for learning",
    description="""
    Fire-and-forget hook for the ticketing system, called when a ticket is
    resolved or closed.

    **Idempotent**: a ticket that is already pending or processing is not
    queued twice. Unknown tickets return 404, unresolved tickets 422.
    """,
    responses={
        202: {"description": "Ticket accepted for learning"},
        404: {"description": "Ticket not found"},
        422: {"description": "Ticket is not resolved"}
    }
)
async def enqueue_ticket(
    ticket_id: str,
    background_tasks: BackgroundTasks,
    queue: LearningQueueManager = Depends(get_queue_manager),
    tickets: IResolvedTicketRepository = Depends(get_ticket_repository)
):
    found = await tickets.get_by_ids([ticket_id])
    ticket = found.get(ticket_id)
    if ticket is None:
        raise ResourceNotFoundException("Ticket", ticket_id)
    if not ticket.is_resolved:
        raise ValidationException(
            f"Ticket {ticket_id} is {ticket.status}, not resolved",
            details={"ticket_id": ticket_id, "status": ticket.status}
        )

    background_tasks.add_task(queue.enqueue, ticket_id)
    return EnqueueResponse(ticket_id=ticket_id, accepted=True)


# ========== Batch learning ==========

@router.post(
    "/batch-process",
    response_model=LearningRunResponse,
    response_model_by_alias=True,
    summary="Run pattern extraction and synthesis over a date range",
    description="""
    Cluster tickets resolved in `[start, end)` and synthesize one article
    per pattern.

    **Idempotent**: patterns that already have an article are counted as
    `duplicatesSkipped` and generate nothing. Optional `ticketIds` restrict
    the run to those (resolved) tickets.

    **Example Request**:
    ```json
    {
        "start": "2024-01-01T00:00:00Z",
        "end": "2024-02-01T00:00:00Z"
    }
    ```
    """,
    responses={
        200: {
            "description": "Run finished",
            "content": {"application/json": {"example": BATCH_RESPONSE_EXAMPLE}}
        },
        422: {"description": "Invalid range or ticket ids"},
        502: {"description": "Embedding provider unavailable"}
    }
)
async def batch_process(
    request: Request,
    payload: BatchProcessRequest = Body(..., examples=[BATCH_REQUEST_EXAMPLE]),
    service: BatchLearningService = Depends(get_batch_service)
):
    start_time = time.perf_counter()
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.info(
        "Batch learning requested",
        extra={
            "correlation_id": correlation_id,
            "start": payload.start.isoformat(),
            "end": payload.end.isoformat(),
            "ticket_ids": len(payload.ticket_ids or []),
        }
    )

    run = await service.process(payload.start, payload.end, payload.ticket_ids)

    logger.info(
        "Batch learning finished",
        extra={
            "correlation_id": correlation_id,
            "run_id": run.id,
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000),
        }
    )
    return LearningRunResponse.from_entity(run)


@router.get(
    "/runs/latest",
    response_model=LearningRunResponse,
    response_model_by_alias=True,
    summary="Most recently requested learning run",
    responses={404: {"description": "No learning run yet"}}
)
async def get_latest_run(service: BatchLearningService = Depends(get_batch_service)):
    run = await service.latest_run()
    if run is None:
        raise ResourceNotFoundException("LearningRun", "latest")
    return LearningRunResponse.from_entity(run)


# ========== Analytics ==========

@router.get(
    "/analytics",
    response_model=LearningAnalyticsResponse,
    response_model_by_alias=True,
    summary="Learning dashboard counters",
    description="""
    Aggregate learning metrics:

    - **articlesCreated**: AI-generated articles
    - **avgEffectiveness**: mean score of published articles
    - **autoResponsesSent**: auto responses applied to tickets
    - **ticketsResolvedByAI**: of those, tickets that ended resolved
    - **topCategories**: most common categories of AI-generated articles
    - **malformedOutputs**: generation attempts rejected by validation
    """,
    responses={
        200: {
            "description": "Analytics",
            "content": {"application/json": {"example": ANALYTICS_RESPONSE_EXAMPLE}}
        }
    }
)
async def get_analytics(service: LearningAnalyticsService = Depends(get_analytics_service)):
    analytics = await service.get_analytics()
    return LearningAnalyticsResponse(
        articles_created=analytics.articles_created,
        avg_effectiveness=analytics.avg_effectiveness,
        auto_responses_sent=analytics.auto_responses_sent,
        tickets_resolved_by_ai=analytics.tickets_resolved_by_ai,
        top_categories=[CategoryCount(**entry) for entry in analytics.top_categories],
        malformed_outputs=analytics.malformed_outputs,
    )


@router.get(
    "/failures",
    response_model=List[SynthesisFailureResponse],
    response_model_by_alias=True,
    summary="Recent synthesis failures for manual review"
)
async def list_failures(
    limit: int = Query(50, ge=1, le=500, description="Maximum failures returned"),
    failures: ISynthesisFailureRepository = Depends(get_failure_repository)
):
    recent = await failures.list_recent(limit)
    return [SynthesisFailureResponse.from_entity(f) for f in recent]
