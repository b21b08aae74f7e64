"""
FastAPI application for the VodHub collector
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .collector.orchestrator import CollectionOrchestrator
from .config import settings
from .database import Database, SourceRegistry, TaskSnapshot, VideoRepository, get_database
from .errors import SourceNotFound, TaskAlreadyRunning, TaskNotFound
from .health import health_router
from .logging_config import setup_logging
from .models import SourceConfig
from .scraper.client import SourceClient
from .validator.url_validator import UrlValidator

# Setup logging
logger = setup_logging(__name__)


class SourceResponse(BaseModel):
    id: str
    name: str
    url: str
    source_type: str
    response_format: str
    weight: int
    timeout: Optional[float]
    categories: List[int]
    enabled: bool
    health: Optional[str] = None
    consecutive_failures: int = 0


class SourceCreate(SourceConfig):
    enabled: bool = True


class CollectRequest(BaseModel):
    task_type: str = Field(..., description="'incremental', 'full', 'category' or 'source'")
    category: Optional[int] = None
    source: Optional[str] = Field(default=None, description="Source name (source tasks)")
    limit: Optional[int] = Field(default=None, description="Page cap per source")


class CollectResponse(BaseModel):
    task_id: str


class CancelResponse(BaseModel):
    success: bool
    task_id: str
    cancelled: bool


class ValidateRequest(BaseModel):
    limit: Optional[int] = None


class ValidateResponse(BaseModel):
    checked: int
    valid: int
    invalidated: int
    routes_removed: int
    low_quality: int
    errors: int


class VideoSummary(BaseModel):
    id: str
    title: str
    year: str
    quality_score: int
    is_valid: bool
    source_names: List[str]
    route_count: int
    last_validated_at: Optional[datetime]


class ReportRequest(BaseModel):
    # vod_id, vod_name and error_type fit the invalid_url_reports columns
    vod_id: str = Field(..., max_length=40)
    vod_name: str = Field(default="", max_length=500)
    play_url: str = Field(..., max_length=2048)
    error_type: str = Field(default="user_report", max_length=50)


class PruneRequest(BaseModel):
    older_than_days: Optional[int] = Field(default=None, ge=0)


class PruneResponse(BaseModel):
    deleted: int


def get_db(request: Request) -> Database:
    return request.app.state.database


def get_orchestrator(request: Request) -> CollectionOrchestrator:
    return request.app.state.orchestrator


def get_validator_factory(request: Request) -> Callable[[], UrlValidator]:
    return request.app.state.validator_factory


def create_app(
    database: Optional[Database] = None,
    client_factory: Callable[[], Any] = SourceClient,
    validator_factory: Optional[Callable[[], UrlValidator]] = None,
    orchestrator: Optional[CollectionOrchestrator] = None,
) -> FastAPI:
    """Build the API around a database and collection orchestrator"""
    database = database or get_database()
    orchestrator = orchestrator or CollectionOrchestrator(database, client_factory=client_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        logger.info(f"Starting {settings.APP_NAME} API")

        try:
            await database.ping()
            logger.info("Database connection successful")
            resumed = await orchestrator.resume_all()
            if resumed:
                logger.info(f"Resumed {len(resumed)} interrupted collection tasks")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")

        yield

        logger.info(f"Shutting down {settings.APP_NAME} API")
        await orchestrator.shutdown()
        await database.dispose()

    app = FastAPI(
        title=f"{settings.APP_NAME} API",
        description="Collection, reconciliation and playback validation for the video catalog",
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.database = database
    app.state.orchestrator = orchestrator
    app.state.validator_factory = validator_factory or (lambda: UrlValidator(database))

    app.include_router(health_router)
    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/admin/sources", response_model=List[SourceResponse])
    async def get_sources(database: Database = Depends(get_db)):
        """Get all sources with their health"""
        registry = SourceRegistry(database.session_factory)
        health = {h.source_name: h for h in await registry.list_health()}

        return [
            SourceResponse(
                id=str(source.id),
                name=source.name,
                url=source.url,
                source_type=source.source_type,
                response_format=source.response_format,
                weight=source.weight,
                timeout=source.timeout,
                categories=list(source.categories or []),
                enabled=source.enabled,
                health=health[source.name].status if source.name in health else None,
                consecutive_failures=health[source.name].consecutive_failures if source.name in health else 0,
            )
            for source in await registry.list_sources()
        ]

    @app.post("/admin/sources", response_model=SourceResponse)
    async def create_source(payload: SourceCreate, database: Database = Depends(get_db)):
        """Create or update a source"""
        if payload.source_type not in ("cms", "tvbox"):
            raise HTTPException(status_code=400, detail=f"Unknown source type '{payload.source_type}'")

        registry = SourceRegistry(database.session_factory)
        config = SourceConfig(**payload.model_dump(exclude={"enabled"}))
        source = await registry.upsert_source(config, enabled=payload.enabled)

        return SourceResponse(
            id=str(source.id),
            name=source.name,
            url=source.url,
            source_type=source.source_type,
            response_format=source.response_format,
            weight=source.weight,
            timeout=source.timeout,
            categories=list(source.categories or []),
            enabled=source.enabled,
        )

    @app.post("/admin/collect", response_model=CollectResponse)
    async def trigger_collect(
        payload: CollectRequest,
        orchestrator: CollectionOrchestrator = Depends(get_orchestrator),
    ):
        """Start a collection task"""
        logger.info(f"Collection triggered: {payload.task_type}")

        try:
            if payload.task_type == "incremental":
                task_id = await orchestrator.run_incremental(payload.limit)
            elif payload.task_type == "full":
                task_id = await orchestrator.run_full()
            elif payload.task_type == "category":
                if payload.category is None:
                    raise HTTPException(status_code=400, detail="category is required for category tasks")
                task_id = await orchestrator.run_category(payload.category, payload.limit)
            elif payload.task_type == "source":
                if not payload.source:
                    raise HTTPException(status_code=400, detail="source is required for source tasks")
                task_id = await orchestrator.run_source(payload.source, payload.limit)
            else:
                raise HTTPException(status_code=400, detail=f"Unknown task type '{payload.task_type}'")
        except TaskAlreadyRunning as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SourceNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        return CollectResponse(task_id=str(task_id))

    @app.post("/admin/tasks/prune", response_model=PruneResponse)
    async def prune_tasks(
        payload: Optional[PruneRequest] = None,
        orchestrator: CollectionOrchestrator = Depends(get_orchestrator),
    ):
        """Delete finished tasks older than the retention window"""
        days = payload.older_than_days if payload else None
        return PruneResponse(deleted=await orchestrator.tasks.prune_tasks(days))

    @app.get("/admin/tasks", response_model=List[TaskSnapshot])
    async def get_tasks(
        limit: int = 20,
        status: Optional[str] = None,
        orchestrator: CollectionOrchestrator = Depends(get_orchestrator),
    ):
        """Get recent collection tasks"""
        tasks = await orchestrator.tasks.list_tasks(limit=limit, status=status)
        return [TaskSnapshot.from_task(task) for task in tasks]

    @app.get("/admin/tasks/{task_id}", response_model=TaskSnapshot)
    async def get_task(task_id: UUID, orchestrator: CollectionOrchestrator = Depends(get_orchestrator)):
        """Get one task's progress"""
        try:
            return await orchestrator.get_snapshot(task_id)
        except TaskNotFound:
            raise HTTPException(status_code=404, detail="Task not found")

    @app.post("/admin/tasks/{task_id}/cancel", response_model=CancelResponse)
    async def cancel_task(task_id: UUID, orchestrator: CollectionOrchestrator = Depends(get_orchestrator)):
        """Request cancellation of a running task"""
        try:
            cancelled = await orchestrator.cancel(task_id)
        except TaskNotFound:
            raise HTTPException(status_code=404, detail="Task not found")
        return CancelResponse(success=True, task_id=str(task_id), cancelled=cancelled)

    @app.post("/admin/validate", response_model=ValidateResponse)
    async def validate_urls(
        payload: Optional[ValidateRequest] = None,
        validator_factory: Callable[[], UrlValidator] = Depends(get_validator_factory),
    ):
        """Validate one batch of playback URLs"""
        limit = payload.limit if payload else None
        async with validator_factory() as validator:
            stats = await validator.validate_batch(limit)
        return ValidateResponse(**stats)

    @app.get("/admin/videos/low-quality", response_model=List[VideoSummary])
    async def get_low_quality(
        threshold: Optional[int] = None,
        limit: int = 100,
        database: Database = Depends(get_db),
    ):
        """Videos scoring below the repair threshold"""
        repo = VideoRepository(database.session_factory)
        videos = await repo.list_low_quality(threshold or settings.LOW_QUALITY_THRESHOLD, limit)
        return [
            VideoSummary(
                id=video.id,
                title=video.title,
                year=video.year,
                quality_score=video.quality_score,
                is_valid=video.is_valid,
                source_names=list(video.source_names or []),
                route_count=len(video.play_routes or {}),
                last_validated_at=video.last_validated_at,
            )
            for video in videos
        ]

    @app.post("/report")
    async def report_invalid_url(
        payload: ReportRequest,
        validator_factory: Callable[[], UrlValidator] = Depends(get_validator_factory),
    ) -> Dict[str, Any]:
        """Public report of a dead playback link; the video is re-checked immediately"""
        async with validator_factory() as validator:
            return await validator.report_invalid_url(
                payload.vod_id, payload.vod_name, payload.play_url, payload.error_type
            )


app = create_app()
