"""
Campus portal presentation API - live board snapshots and role-checked board actions.

The API serves one CampusPortal, and every route acts as that portal's actor (the
session the process signed in with, see CampusPortal.switch_actor). Role checks
here guard what that actor may do; they do not authenticate HTTP callers. Run it
per user session or behind a gateway that does.
"""

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    HealthResponse,
    BoardResponse,
    StatsResponse,
    MutationRequest,
    MutationResponse,
    BulkMutationResponse,
    ClassroomStatusRequest,
    FacultyStatusRequest,
    VoteRequest,
    AnnouncementCreateRequest,
    AnnouncementUpdateRequest,
    FeedbackRequest,
    FeedbackStatusRequest,
)
from ..core import actions
from ..core.config import VERSION, PORTAL_API_ENABLED, debug_enabled, get_admin_roles, get_api_origins
from ..core.errors import ActionNotPermitted, BoardError
from ..core.portal import CampusPortal, connect_portal
from ..core.schema import ClassroomStatus, MutationKind
from ..core.store import RealtimeListStore, RollbackHandle, StoreState
from ..core.tables import ANNOUNCEMENTS, CANTEEN_MENU, CLASSROOMS, FACULTY, FEEDBACK, NOTIFICATIONS
from ..util.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = None
    if getattr(app.state, "portal", None) is None and PORTAL_API_ENABLED:
        try:
            owned = await connect_portal()
            await owned.start()
            app.state.portal = owned
        except (ValueError, BoardError) as e:
            logger.error(f"Portal not connected: {e}")
            owned = None
    yield
    if owned is not None:
        await owned.teardown()
        app.state.portal = None


# Initialize the FastAPI application
app = FastAPI(
    title="Campus Board API",
    version=VERSION,
    description="Live, role-scoped campus boards backed by Supabase",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan
)

# Add CORS middleware to allow frontend connections
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_api_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_portal(request: Request) -> CampusPortal:
    portal = getattr(request.app.state, "portal", None)
    if portal is None:
        raise HTTPException(status_code=503, detail="Portal not connected")
    return portal


def get_board(table: str, portal: CampusPortal = Depends(get_portal)) -> RealtimeListStore:
    try:
        return portal.board(table)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown board: {table}")


async def _run(action):
    """Await a board action, mapping its errors onto HTTP responses."""
    try:
        return await action
    except ActionNotPermitted as e:
        raise HTTPException(status_code=403, detail=str(e))
    except KeyError as e:
        raise HTTPException(status_code=404, detail=e.args[0] if e.args else "Not found")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BoardError as e:
        raise HTTPException(status_code=502, detail=str(e))


def _outcome(store: RealtimeListStore, handle: RollbackHandle) -> MutationResponse:
    return MutationResponse(
        table=store.table,
        status=handle.outcome,
        mutation_id=handle.mutation_id,
        entity_id=None if handle.entity_id is None else str(handle.entity_id)
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(request: Request):
    """Check portal health: one lifecycle state per board."""
    portal = getattr(request.app.state, "portal", None)
    boards = portal.health() if portal is not None else {}
    live = bool(boards) and all(state == StoreState.LIVE.value for state in boards.values())

    return HealthResponse(
        status="healthy" if live else "degraded",
        version=VERSION,
        boards=boards
    )


@app.get("/boards/classrooms/stats", response_model=StatsResponse)
def classroom_stats_endpoint(portal: CampusPortal = Depends(get_portal)):
    """Classroom counts by status."""
    store = portal.board(CLASSROOMS.table)
    counts = actions.status_counts(store.snapshot(), [s.value for s in ClassroomStatus])
    total = counts.pop("total")
    return StatsResponse(table=store.table, total=total, counts=counts)


@app.get("/boards/{table}", response_model=BoardResponse)
def get_board_endpoint(store: RealtimeListStore = Depends(get_board)):
    """Current ordered snapshot of a board."""
    items = store.snapshot()
    return BoardResponse(
        table=store.table,
        state=store.state.value,
        last_error=str(store.last_error) if store.last_error else None,
        count=len(items),
        items=[item.to_dict() for item in items]
    )


@app.post("/boards/{table}/mutations", response_model=MutationResponse)
async def mutate_board_endpoint(request: MutationRequest, store: RealtimeListStore = Depends(get_board),
                                portal: CampusPortal = Depends(get_portal)):
    """Raw optimistic mutation; the portal's own actor must hold an administrative role."""
    if portal.actor is None or not portal.actor.has_role(*get_admin_roles()):
        raise HTTPException(status_code=403, detail="Raw board mutations require an administrative role")

    kind = MutationKind(request.kind)
    if kind != MutationKind.INSERT and not request.entity_id:
        raise HTTPException(status_code=422, detail=f"entity_id is required for {kind.value}")

    handle = await store.issue_mutation(kind, request.entity_id, request.fields)
    return _outcome(store, handle)


@app.post("/boards/classrooms/{classroom_id}/status", response_model=MutationResponse)
async def update_classroom_status_endpoint(classroom_id: str, request: ClassroomStatusRequest,
                                           portal: CampusPortal = Depends(get_portal)):
    store = portal.board(CLASSROOMS.table)
    handle = await _run(actions.update_classroom_status(store, portal.actor, classroom_id, request.status))
    return _outcome(store, handle)


@app.post("/boards/faculty_availability/{faculty_id}/status", response_model=MutationResponse)
async def update_faculty_status_endpoint(faculty_id: str, request: FacultyStatusRequest,
                                         portal: CampusPortal = Depends(get_portal)):
    store = portal.board(FACULTY.table)
    handle = await _run(actions.update_faculty_status(
        store, portal.actor, faculty_id, request.status,
        return_date=request.return_date, notes=request.notes
    ))
    return _outcome(store, handle)


@app.get("/boards/canteen_menu/votes", response_model=List[str])
async def voted_items_endpoint(portal: CampusPortal = Depends(get_portal)):
    """Menu items the signed-in user has voted for."""
    voted = await _run(actions.fetch_voted_items(portal.gateway, portal.actor))
    return sorted(voted)


@app.post("/boards/canteen_menu/reset-votes")
async def reset_votes_endpoint(portal: CampusPortal = Depends(get_portal)):
    store = portal.board(CANTEEN_MENU.table)
    reloaded = await _run(actions.reset_votes(store, portal.gateway, portal.actor))
    return {"success": True, "reloaded": reloaded}


@app.post("/boards/canteen_menu/{item_id}/vote", response_model=MutationResponse)
async def vote_endpoint(item_id: str, request: VoteRequest, portal: CampusPortal = Depends(get_portal)):
    store = portal.board(CANTEEN_MENU.table)
    handle = await _run(actions.toggle_vote(store, portal.gateway, portal.actor, item_id, request.voted))
    return _outcome(store, handle)


@app.post("/boards/announcements", response_model=MutationResponse)
async def create_announcement_endpoint(request: AnnouncementCreateRequest,
                                       portal: CampusPortal = Depends(get_portal)):
    store = portal.board(ANNOUNCEMENTS.table)
    handle = await _run(actions.create_announcement(
        store, portal.actor, request.title, request.content, request.target_role
    ))
    return _outcome(store, handle)


@app.patch("/boards/announcements/{announcement_id}", response_model=MutationResponse)
async def edit_announcement_endpoint(announcement_id: str, request: AnnouncementUpdateRequest,
                                     portal: CampusPortal = Depends(get_portal)):
    store = portal.board(ANNOUNCEMENTS.table)
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No changes supplied")
    handle = await _run(actions.edit_announcement(store, portal.actor, announcement_id, changes))
    return _outcome(store, handle)


@app.delete("/boards/announcements/{announcement_id}", response_model=MutationResponse)
async def delete_announcement_endpoint(announcement_id: str, portal: CampusPortal = Depends(get_portal)):
    store = portal.board(ANNOUNCEMENTS.table)
    handle = await _run(actions.delete_announcement(store, portal.actor, announcement_id))
    return _outcome(store, handle)


@app.post("/boards/user_notifications/read-all", response_model=BulkMutationResponse)
async def mark_all_read_endpoint(portal: CampusPortal = Depends(get_portal)):
    store = portal.board(NOTIFICATIONS.table)
    handles = await _run(actions.mark_all_notifications_read(store, portal.actor))
    rolled_back = sum(1 for h in handles if h.rolled_back)
    return BulkMutationResponse(table=store.table, confirmed=len(handles) - rolled_back, rolled_back=rolled_back)


@app.post("/boards/user_notifications/{notification_id}/read", response_model=MutationResponse)
async def mark_read_endpoint(notification_id: str, portal: CampusPortal = Depends(get_portal)):
    store = portal.board(NOTIFICATIONS.table)
    handle = await _run(actions.mark_notification_read(store, portal.actor, notification_id))
    return _outcome(store, handle)


@app.post("/boards/feedback", response_model=MutationResponse)
async def submit_feedback_endpoint(request: FeedbackRequest, portal: CampusPortal = Depends(get_portal)):
    store = portal.board(FEEDBACK.table)
    handle = await _run(actions.submit_feedback(store, portal.actor, request.subject, request.message))
    return _outcome(store, handle)


@app.post("/boards/feedback/{feedback_id}/status", response_model=MutationResponse)
async def feedback_status_endpoint(feedback_id: str, request: FeedbackStatusRequest,
                                   portal: CampusPortal = Depends(get_portal)):
    store = portal.board(FEEDBACK.table)
    handle = await _run(actions.update_feedback_status(store, portal.actor, feedback_id, request.status))
    return _outcome(store, handle)


@app.delete("/boards/feedback/{feedback_id}", response_model=MutationResponse)
async def delete_feedback_endpoint(feedback_id: str, portal: CampusPortal = Depends(get_portal)):
    store = portal.board(FEEDBACK.table)
    handle = await _run(actions.delete_feedback(store, portal.actor, feedback_id))
    return _outcome(store, handle)
