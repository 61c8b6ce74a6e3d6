"""Procura HTTP API.

Thin layer over the lifecycle engine: identity and ownership checks happen
here, state rules live in the engine. Services are built once per app in
``create_app`` and hang off ``app.state``.
"""

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import Actor, check_bidder, check_owner, get_actor, require_admin, require_role
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .errors import ProcuraError
from .lifecycle import LifecycleEngine, OverrideOperations
from .models import (
    BidPatch,
    Project,
    ProjectPatch,
    ProjectStatus,
    RatingPayload,
    Role,
    TransitionResult,
)
from .notifications import NotificationDispatcher, NotificationSink, create_sink
from .ratings import RatingCollaborator, create_ratings
from .scheduler import ClosureScheduler
from .store import ProjectStore, create_store

logger = structlog.get_logger()

router = APIRouter()


# ============================================================
# Request Models
# ============================================================

class ProjectCreateRequest(BaseModel):
    title: str
    description: str = ""
    bidding_deadline: datetime
    delivery_date: datetime
    max_bid: Optional[float] = None
    show_max_bid: bool = True


class AwardRequest(BaseModel):
    bid_id: str


class CompleteRequest(BaseModel):
    rating: Optional[RatingPayload] = None


class BidSubmitRequest(BaseModel):
    amount: float
    comment: Optional[str] = None
    alternate_delivery_date: Optional[datetime] = None


class ForceCompleteRequest(BaseModel):
    bid_id: Optional[str] = None


# ============================================================
# Dependencies
# ============================================================

def get_engine(request: Request) -> LifecycleEngine:
    return request.app.state.engine


def get_overrides(request: Request) -> OverrideOperations:
    return request.app.state.overrides


def get_scheduler(request: Request) -> ClosureScheduler:
    return request.app.state.scheduler


def project_view(project: Project, actor: Actor) -> dict:
    """Project as the caller may see it. A hidden ceiling is only shown to the owner."""
    data = project.model_dump(mode="json")
    if not project.show_max_bid and not actor.owns(project):
        data["max_bid"] = None
    return data


def result_view(result: TransitionResult, actor: Actor) -> dict:
    data = result.model_dump(mode="json")
    data["project"] = project_view(result.project, actor)
    return data


# ============================================================
# Health
# ============================================================

@router.get("/health")
async def health(scheduler: ClosureScheduler = Depends(get_scheduler)):
    return {"status": "ok", "scheduler": scheduler.status()}


# ============================================================
# Project Endpoints
# ============================================================

@router.post("/api/projects", status_code=201)
async def create_project(
    req: ProjectCreateRequest,
    actor: Actor = Depends(require_role(Role.PROJECT_MANAGER)),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Create a project in draft owned by the caller."""
    project = await engine.create_project(
        owner_id=actor.user_id,
        title=req.title,
        description=req.description,
        bidding_deadline=req.bidding_deadline,
        delivery_date=req.delivery_date,
        max_bid=req.max_bid,
        show_max_bid=req.show_max_bid,
    )
    return project_view(project, actor)


@router.get("/api/projects")
async def list_projects(
    status: Optional[ProjectStatus] = None,
    owner_id: Optional[str] = None,
    limit: int = 100,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    projects = await engine.list_projects(status=status, owner_id=owner_id, limit=limit)
    return [project_view(p, actor) for p in projects]


@router.get("/api/projects/{project_id}")
async def get_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    project = await engine.get_project(project_id)
    data = project_view(project, actor)
    if actor.owns(project):
        data["bid_stats"] = (await engine.bid_stats(project_id)).model_dump()
    return data


@router.patch("/api/projects/{project_id}")
async def update_project(
    project_id: str,
    patch: ProjectPatch,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    project = await engine.update_project(project_id, patch)
    return project_view(project, actor)


@router.delete("/api/projects/{project_id}")
async def delete_project(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    await engine.delete_project(project_id)
    return {"message": "Project deleted successfully", "project_id": project_id}


@router.post("/api/projects/{project_id}/open")
async def open_bidding(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    return result_view(await engine.open_bidding(project_id), actor)


@router.post("/api/projects/{project_id}/close")
async def close_bidding(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    return result_view(await engine.close_bidding(project_id), actor)


@router.post("/api/projects/{project_id}/award")
async def award(
    project_id: str,
    req: AwardRequest,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    return result_view(await engine.award(project_id, req.bid_id), actor)


@router.post("/api/projects/{project_id}/complete")
async def complete(
    project_id: str,
    req: Optional[CompleteRequest] = None,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    rating = req.rating if req else None
    result = await engine.complete(project_id, rating=rating, rater_id=actor.user_id)
    return result_view(result, actor)


@router.post("/api/projects/{project_id}/cancel")
async def cancel(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_owner(actor, await engine.get_project(project_id))
    return result_view(await engine.cancel(project_id), actor)


# ============================================================
# Bid Endpoints
# ============================================================

@router.get("/api/projects/{project_id}/bids")
async def list_bids(
    project_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    """Owners see every bid; bidders only their own."""
    project = await engine.get_project(project_id)
    bidder_id = None if actor.owns(project) else actor.user_id
    bids = await engine.list_bids(project_id, bidder_id=bidder_id)
    return [b.model_dump(mode="json") for b in bids]


@router.post("/api/projects/{project_id}/bids", status_code=201)
async def submit_bid(
    project_id: str,
    req: BidSubmitRequest,
    actor: Actor = Depends(require_role(Role.INSTALLATION_COMPANY)),
    engine: LifecycleEngine = Depends(get_engine),
):
    bid = await engine.submit_bid(
        project_id,
        bidder_id=actor.user_id,
        amount=req.amount,
        comment=req.comment,
        alternate_delivery_date=req.alternate_delivery_date,
    )
    return bid.model_dump(mode="json")


@router.patch("/api/bids/{bid_id}")
async def amend_bid(
    bid_id: str,
    patch: BidPatch,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_bidder(actor, await engine.get_bid(bid_id))
    bid = await engine.amend_bid(bid_id, patch)
    return bid.model_dump(mode="json")


@router.delete("/api/bids/{bid_id}")
async def withdraw_bid(
    bid_id: str,
    actor: Actor = Depends(get_actor),
    engine: LifecycleEngine = Depends(get_engine),
):
    check_bidder(actor, await engine.get_bid(bid_id))
    bid = await engine.withdraw_bid(bid_id)
    return bid.model_dump(mode="json")


# ============================================================
# Admin Endpoints
# ============================================================

@router.post("/api/admin/projects/{project_id}/force-close")
async def force_close(
    project_id: str,
    actor: Actor = Depends(require_admin),
    overrides: OverrideOperations = Depends(get_overrides),
):
    return result_view(await overrides.force_close(project_id), actor)


@router.post("/api/admin/projects/{project_id}/force-complete")
async def force_complete(
    project_id: str,
    req: Optional[ForceCompleteRequest] = None,
    actor: Actor = Depends(require_admin),
    overrides: OverrideOperations = Depends(get_overrides),
):
    bid_id = req.bid_id if req else None
    return result_view(await overrides.force_complete(project_id, bid_id=bid_id), actor)


@router.post("/api/admin/projects/{project_id}/reset")
async def reset_to_draft(
    project_id: str,
    actor: Actor = Depends(require_admin),
    overrides: OverrideOperations = Depends(get_overrides),
):
    return result_view(await overrides.reset_to_draft(project_id), actor)


@router.get("/api/admin/scheduler")
async def scheduler_status(
    actor: Actor = Depends(require_admin),
    scheduler: ClosureScheduler = Depends(get_scheduler),
):
    return scheduler.status()


@router.post("/api/admin/scheduler/sweep")
async def scheduler_sweep(
    actor: Actor = Depends(require_admin),
    scheduler: ClosureScheduler = Depends(get_scheduler),
):
    """Run one closure pass now."""
    report = await scheduler.sweep()
    if report is None:
        return {"message": "Sweep already in progress", "report": None}
    return {"message": "Sweep completed", "report": report.to_dict()}


@router.post("/api/admin/scheduler/restart")
async def scheduler_restart(
    actor: Actor = Depends(require_admin),
    scheduler: ClosureScheduler = Depends(get_scheduler),
):
    await scheduler.restart()
    logger.info("scheduler_restarted", by=actor.user_id)
    return {"message": "Scheduler restarted", "status": scheduler.status()}


# ============================================================
# App Factory
# ============================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ProjectStore] = None,
    sink: Optional[NotificationSink] = None,
    ratings: Optional[RatingCollaborator] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Build the API with its services.

    Args:
        settings: Settings, defaults to the environment
        store: Project store, defaults to ``settings.store_backend``
        sink: Notification sink, defaults to ``settings.notification_backend``
        ratings: Rating collaborator, defaults to one sharing the store's client
        clock: Time source, defaults to the wall clock

    Returns:
        FastAPI app; the closure scheduler starts with the app when enabled
    """
    settings = settings or get_settings()
    store = store or create_store(settings)
    sink = sink or create_sink(settings)
    clock = clock or SystemClock()
    if ratings is None:
        ratings = create_ratings(settings, client=getattr(store, "client", None))

    engine = LifecycleEngine(
        store,
        NotificationDispatcher(sink),
        ratings=ratings,
        clock=clock,
        settings=settings,
    )
    scheduler = ClosureScheduler(
        engine,
        interval=settings.sweep_interval_seconds,
        sweep_on_start=settings.sweep_on_start,
    )

    app = FastAPI(
        title="Procura",
        description="Bidding lifecycle engine for procurement projects",
        version="0.1.0",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.engine = engine
    app.state.overrides = OverrideOperations(engine)
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ProcuraError)
    async def procura_error_handler(request: Request, exc: ProcuraError):
        logger.info(
            "request_rejected",
            path=request.url.path,
            error=exc.code,
            detail=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "detail": str(exc.errors())},
        )

    @app.on_event("startup")
    async def startup():
        await store.setup_indexes()
        if hasattr(ratings, "setup_indexes"):
            await ratings.setup_indexes()
        if settings.scheduler_enabled:
            scheduler.start()
        logger.info(
            "procura_api_started",
            store=settings.store_backend,
            scheduler="enabled" if settings.scheduler_enabled else "disabled",
        )

    @app.on_event("shutdown")
    async def shutdown():
        await scheduler.stop()
        await sink.close()
        await store.close()
        logger.info("procura_api_stopped")

    app.include_router(router)
    return app
