"""
KB Learning - Main Application
===============================

Knowledge learning pipeline for the support ticketing system.

Modules:
- Learning: queue resolved tickets, extract patterns, synthesize articles
- Knowledge: semantic search, effectiveness scoring, auto-response gate

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, LLM, vector store, Slack, scheduler
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration and Core
from kb_learning.config import settings
from kb_learning.core import ApplicationException

# Infrastructure
from kb_learning.infrastructure.database import close_database, create_tables, init_database
from kb_learning.infrastructure.llm import ILLMClient, create_llm_client
from kb_learning.infrastructure.vectorstore import IVectorStore, create_vector_store

# Learning Module
from kb_learning.learning.application import (
    ArticleSynthesizer,
    BatchLearningService,
    ILearningAlertNotifier,
    LearningAnalyticsService,
    LearningQueueManager,
    LearningRunTracker,
    LearningWorker,
)
from kb_learning.learning.application.services import PolicyProvider
from kb_learning.learning.domain import PatternExtractor
from kb_learning.learning.infrastructure import (
    LearningConfigManager,
    LearningScheduler,
    SlackClient,
    SQLAlchemyLearningQueueRepository,
    SQLAlchemyLearningRunRepository,
    SQLAlchemyResolvedTicketRepository,
    SQLAlchemySynthesisFailureRepository,
)

# Knowledge Module
from kb_learning.knowledge.application import (
    ArticleIndexer,
    AutoResponseService,
    EffectivenessService,
    SemanticRetrievalService,
    TextEmbedder,
)
from kb_learning.knowledge.infrastructure import (
    SQLAlchemyAutoResponseRepository,
    SQLAlchemyKnowledgeArticleRepository,
)

# Module Routers
from kb_learning.learning.interfaces import learning_router, queue_router
from kb_learning.knowledge.interfaces import knowledge_router, triage_router

# Logging, metrics, middleware
from kb_learning.shared.api.middleware import install_middleware
from kb_learning.shared.infrastructure.grafana import init_grafana_exporter
from kb_learning.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


@dataclass
class LearningServices:
    """Every wired service the API and background jobs use."""
    ticket_repository: SQLAlchemyResolvedTicketRepository
    failure_repository: SQLAlchemySynthesisFailureRepository
    queue_manager: LearningQueueManager
    synthesizer: ArticleSynthesizer
    batch_service: BatchLearningService
    worker: LearningWorker
    analytics_service: LearningAnalyticsService
    indexer: ArticleIndexer
    retrieval_service: SemanticRetrievalService
    effectiveness_service: EffectivenessService
    auto_response_service: AutoResponseService


def build_services(
    llm_client: ILLMClient,
    vector_store: IVectorStore,
    policy_provider: PolicyProvider,
    notifier: Optional[ILearningAlertNotifier] = None
) -> LearningServices:
    """Wire repositories and services. Repositories use the global session factory."""
    ticket_repo = SQLAlchemyResolvedTicketRepository()
    queue_repo = SQLAlchemyLearningQueueRepository()
    run_repo = SQLAlchemyLearningRunRepository()
    failure_repo = SQLAlchemySynthesisFailureRepository()
    article_repo = SQLAlchemyKnowledgeArticleRepository()
    auto_response_repo = SQLAlchemyAutoResponseRepository()

    embedder = TextEmbedder(llm_client, timeout_seconds=settings.search_timeout_seconds)
    indexer = ArticleIndexer(article_repo, vector_store, embedder)
    extractor = PatternExtractor(embedder)
    queue_manager = LearningQueueManager(queue_repo, policy_provider)
    synthesizer = ArticleSynthesizer(
        llm_client,
        article_repo,
        indexer,
        failure_repo,
        policy_provider,
        timeout_seconds=settings.synthesis_timeout_seconds,
    )
    retrieval = SemanticRetrievalService(
        embedder,
        vector_store,
        article_repo,
        similarity_floor=settings.search_similarity_floor,
    )

    return LearningServices(
        ticket_repository=ticket_repo,
        failure_repository=failure_repo,
        queue_manager=queue_manager,
        synthesizer=synthesizer,
        batch_service=BatchLearningService(
            ticket_repo, extractor, synthesizer, run_repo, LearningRunTracker(), policy_provider
        ),
        worker=LearningWorker(
            queue_manager,
            ticket_repo,
            extractor,
            synthesizer,
            policy_provider,
            notifier=notifier,
            batch_size=settings.worker_batch_size,
            concurrency=settings.worker_concurrency,
        ),
        analytics_service=LearningAnalyticsService(article_repo, auto_response_repo, ticket_repo, failure_repo),
        indexer=indexer,
        retrieval_service=retrieval,
        effectiveness_service=EffectivenessService(
            article_repo, auto_response_repo, ticket_repo, policy_provider
        ),
        auto_response_service=AutoResponseService(retrieval, article_repo, auto_response_repo, policy_provider),
    )


def attach_services(app: FastAPI, services: LearningServices) -> None:
    """Expose services on app.state for the controllers."""
    for name, service in services.__dict__.items():
        setattr(app.state, name, service)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load the learning policy and watch it for changes
    4. Initialize LLM client, vector store and Grafana exporter
    5. Wire services, warm the vector index
    6. Start the worker and scoring jobs

    SHUTDOWN:
    1. Stop scheduler and policy watcher
    2. Close Slack client
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(level=settings.log_level, environment=settings.environment, service=settings.app_name)
    logger.info("Starting KB learning service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Development convenience; production schemas are migrated separately
    try:
        await create_tables()
    except (OSError, SQLAlchemyError) as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading learning policy")
    config_manager = LearningConfigManager()
    config_manager.load(settings.learning_config_path)
    config_manager.start_watching()
    app.state.config_manager = config_manager

    logger.info("Initializing LLM client", extra={"provider": "mock" if settings.mock_llm else settings.llm_provider})
    llm_client = create_llm_client()
    app.state.llm_client = llm_client

    if settings.grafana_host and settings.grafana_api_key and settings.grafana_instance_id:
        init_grafana_exporter(
            host=settings.grafana_host,
            api_key=settings.grafana_api_key,
            instance_id=settings.grafana_instance_id
        )
        logger.info("Grafana OTLP exporter initialized")
    else:
        logger.info("Grafana OTLP exporter not configured - metrics will not be exported")

    vector_store = create_vector_store()
    try:
        await vector_store.initialize()
    except ApplicationException as e:
        logger.warning(f"Vector store not available: {e.message}")
    app.state.vector_store = vector_store

    slack_client = SlackClient()
    services = build_services(llm_client, vector_store, config_manager, notifier=slack_client)
    attach_services(app, services)

    try:
        await services.indexer.warm_up()
    except (ApplicationException, SQLAlchemyError) as e:
        logger.warning(f"Vector index warm-up skipped: {e}")

    scheduler = LearningScheduler()
    if settings.worker_enabled:
        scheduler.add_job("learning_queue_drain", services.worker.run_once, settings.worker_interval_seconds)
        scheduler.add_job(
            "effectiveness_scoring",
            services.effectiveness_service.recompute_all,
            settings.scoring_interval_seconds
        )
        await scheduler.start()
    app.state.scheduler = scheduler

    logger.info("KB learning service started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down KB learning service")
    await scheduler.stop()
    config_manager.stop_watching()
    await slack_client.close()
    await close_database()
    logger.info("KB learning service shutdown complete")


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="KB Learning API",
        description="""
    ## Knowledge Learning Pipeline

    Learns knowledge articles from resolved support tickets and serves
    them back to agents and customers.

    ---

    ### Learning Module

    - `POST /learning-queue/{ticket_id}` - Queue a resolved ticket
    - `GET /learning-queue/status` - Queue counters
    - `POST /learning/batch-process` - Learn from a date range
    - `GET /learning/runs/latest` - Latest run counters
    - `GET /learning/analytics` - Dashboard metrics
    - `GET /learning/failures` - Generation failures for review

    ### Knowledge Module

    - `POST /knowledge/search` - Semantic article search
    - `POST /knowledge/{id}/feedback` - Helpful / not helpful vote
    - `POST /knowledge/{id}/reindex` - Refresh an article's embedding
    - `POST /triage/auto-response` - Confidence-gated auto response
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if with_lifespan else None
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_middleware(app)

    app.include_router(queue_router)
    app.include_router(learning_router)
    app.include_router(knowledge_router)
    app.include_router(triage_router)

    @app.get("/health", tags=["Health"], responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "learning_policy": "loaded",
                            "scheduler": "running",
                            "llm_client": "available",
                            "vector_store": "available (12 documents)"
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        state = request.app.state
        scheduler = getattr(state, "scheduler", None)
        checks = {
            "learning_policy": "loaded" if getattr(state, "config_manager", None) else "not_loaded",
            "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
            "llm_client": "available" if getattr(state, "llm_client", None) else "not_configured",
            "vector_store": "not_configured",
        }

        vector_store = getattr(state, "vector_store", None)
        if vector_store is not None:
            try:
                count = await vector_store.get_document_count()
                checks["vector_store"] = f"available ({count} documents)"
            except ApplicationException as e:
                checks["vector_store"] = f"error: {e.message}"

        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "KB Learning Service",
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "learning": {
                    "prefixes": ["/learning-queue", "/learning"],
                    "endpoints": [
                        "POST /learning-queue/{ticket_id} - Enqueue resolved ticket",
                        "GET /learning-queue/status - Queue counters",
                        "POST /learning/batch-process - Batch learning run",
                        "GET /learning/runs/latest - Latest run",
                        "GET /learning/analytics - Learning analytics",
                        "GET /learning/failures - Synthesis failures"
                    ]
                },
                "knowledge": {
                    "prefixes": ["/knowledge", "/triage"],
                    "endpoints": [
                        "POST /knowledge/search - Semantic search",
                        "POST /knowledge/{id}/feedback - Article feedback",
                        "POST /knowledge/{id}/reindex - Reindex article",
                        "POST /triage/auto-response - Auto-response gate"
                    ]
                }
            }
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kb_learning.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
