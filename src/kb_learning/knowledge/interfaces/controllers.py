"""
Knowledge Controllers (API Routes)
===================================

FastAPI routes for knowledge search, article feedback and the ticket
auto-response gate.
"""

import time
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from kb_learning.knowledge.application import (
    ArticleIndexer,
    ArticleResponse,
    AutoResponseRequest,
    AutoResponseResponse,
    AutoResponseService,
    EffectivenessService,
    FeedbackRequest,
    SearchRequest,
    SearchResultResponse,
    SemanticRetrievalService,
)
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/knowledge", tags=["Knowledge Base"])
triage_router = APIRouter(prefix="/triage", tags=["Ticket Triage"])


# ========== Example payloads for Swagger ==========

SEARCH_REQUEST_EXAMPLE = {
    "query": "SSO login fails with invalid SAML assertion",
    "limit": 5,
    "category": "authentication"
}

ARTICLE_EXAMPLE = {
    "id": "0c6f7f43-4f1e-4c1b-9a7e-9e2f4b2c8d11",
    "title": "Fixing SAML assertion errors after IdP certificate rotation",
    "summary": "SSO fails when the IdP signing certificate changed but the SP still trusts the old one.",
    "content": "1. Download the new IdP metadata\n2. Replace the signing certificate\n3. Retry the login",
    "category": "authentication",
    "tags": ["saml", "sso"],
    "status": "published",
    "source": "ai_generated",
    "sourceTicketIds": ["T-101", "T-117", "T-123", "T-140"],
    "effectivenessScore": 0.86,
    "usageCount": 14,
    "viewCount": 40,
    "helpfulVotes": 9,
    "unhelpfulVotes": 1,
    "createdAt": "2024-02-01T09:00:12Z",
    "updatedAt": "2024-02-03T16:21:40Z"
}

SEARCH_RESPONSE_EXAMPLE = [
    {"article": ARTICLE_EXAMPLE, "similarityScore": 0.91, "rank": 1}
]

AUTO_RESPONSE_REQUEST_EXAMPLE = {
    "ticketId": "T-204",
    "title": "Cannot log in with SSO",
    "description": "Since this morning every SSO login shows 'invalid SAML assertion'."
}

AUTO_RESPONSE_RESPONSE_EXAMPLE = {
    "ticketId": "T-204",
    "band": "auto",
    "article": ARTICLE_EXAMPLE,
    "similarityScore": 0.91,
    "applied": True
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


def get_retrieval_service(request: Request) -> SemanticRetrievalService:
    return _state(request, "retrieval_service")


def get_effectiveness_service(request: Request) -> EffectivenessService:
    return _state(request, "effectiveness_service")


def get_indexer(request: Request) -> ArticleIndexer:
    return _state(request, "indexer")


def get_auto_response_service(request: Request) -> AutoResponseService:
    return _state(request, "auto_response_service")


# ========== Route Handlers ==========

@router.post(
    "/search",
    response_model=List[SearchResultResponse],
    response_model_by_alias=True,
    summary="Semantic search over published articles",
    description="""
    Rank published knowledge articles by semantic similarity to a query.

    Results are ordered by similarity, ties broken by usage count and then
    recency. Draft and archived articles are never returned. An optional
    category restricts the results. If the embedding provider or the index
    is unavailable, articles are matched by keyword with a fixed score.
    """,
    responses={
        200: {
            "description": "Ranked results",
            "content": {"application/json": {"example": SEARCH_RESPONSE_EXAMPLE}}
        }
    }
)
async def search_articles(
    request: Request,
    payload: SearchRequest = Body(..., examples=[SEARCH_REQUEST_EXAMPLE]),
    retrieval: SemanticRetrievalService = Depends(get_retrieval_service)
):
    start_time = time.perf_counter()
    results = await retrieval.search(payload.query, payload.limit, category=payload.category)

    logger.info(
        "Knowledge search",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "query_preview": payload.query[:100],
            "category": payload.category,
            "results": len(results),
            "processing_time_ms": int((time.perf_counter() - start_time) * 1000),
        }
    )
    return [SearchResultResponse.from_result(r) for r in results]


@router.post(
    "/{article_id}/feedback",
    response_model=ArticleResponse,
    response_model_by_alias=True,
    summary="Record a helpful / not helpful vote",
    responses={404: {"description": "Article not found"}}
)
async def record_feedback(
    article_id: str,
    payload: FeedbackRequest,
    service: EffectivenessService = Depends(get_effectiveness_service)
):
    article = await service.record_feedback(article_id, payload.helpful)
    return ArticleResponse.from_entity(article)


@router.post(
    "/{article_id}/reindex",
    response_model=ArticleResponse,
    response_model_by_alias=True,
    summary="Recompute an article's embedding and refresh its index entry",
    description="""
    Called by the article CRUD layer after an edit. Published articles are
    re-embedded and upserted; draft and archived ones are removed from the
    index.
    """,
    responses={
        404: {"description": "Article not found"},
        502: {"description": "Embedding provider or index unavailable"}
    }
)
async def reindex_article(article_id: str, indexer: ArticleIndexer = Depends(get_indexer)):
    article = await indexer.reindex(article_id)
    return ArticleResponse.from_entity(article)


@triage_router.post(
    "/auto-response",
    response_model=AutoResponseResponse,
    response_model_by_alias=True,
    summary="Match an incoming ticket against the knowledge base",
    description="""
    Classify the best matching article into a confidence band:

    - **auto**: similarity at or above the high threshold; applied to the
      ticket when auto responses are enabled
    - **suggest**: at or above the medium threshold; shown to the agent
    - **none**: nothing relevant enough
    """,
    responses={
        200: {
            "description": "Gate decision",
            "content": {"application/json": {"example": AUTO_RESPONSE_RESPONSE_EXAMPLE}}
        }
    }
)
async def auto_response(
    request: Request,
    payload: AutoResponseRequest = Body(..., examples=[AUTO_RESPONSE_REQUEST_EXAMPLE]),
    service: AutoResponseService = Depends(get_auto_response_service)
):
    outcome = await service.respond(payload.ticket_id, payload.title, payload.description)

    logger.info(
        "Auto-response gate evaluated",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "ticket_id": payload.ticket_id,
            "band": outcome.band,
            "applied": outcome.applied,
        }
    )

    if outcome.result is None:
        return AutoResponseResponse(ticket_id=payload.ticket_id, band=outcome.band)
    return AutoResponseResponse(
        ticket_id=payload.ticket_id,
        band=outcome.band,
        article=ArticleResponse.from_entity(outcome.result.article),
        similarity_score=round(outcome.result.similarity_score, 4),
        applied=outcome.applied,
    )
