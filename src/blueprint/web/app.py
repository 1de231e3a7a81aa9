"""
Lifestyle Blueprint Web API - FastAPI application.

Onboarding sessions run in process memory. The client drives a session
with messages and selections and watches it through an SSE stream of
conversation events. The generation service posts progress here, and the
AI backend posts run webhooks here.
"""

import asyncio
import json
import logging
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from blueprint import __version__
from blueprint.calculator import (
    CalorieInputs,
    age_from_birth_date,
    calculate_all,
    resolve_activity_level,
    resolve_fitness_goal,
    resolve_sex,
)
from blueprint.config import configure_logging, settings
from blueprint.errors import PersistenceError, WebhookError
from blueprint.forms import (
    MAX_HEIGHT_INCHES,
    MAX_WEIGHT_POUNDS,
    MIN_HEIGHT_INCHES,
    MIN_WEIGHT_POUNDS,
    get_form_options,
)
from blueprint.generation.progress import ProgressUpdate
from blueprint.meal_plans import group_shopping_list, structure_meal_plan
from blueprint.orchestrator import StageOrchestrator
from blueprint.web.auth import AuthenticatedUser, get_current_user
from blueprint.web.services import Services, build_services, get_services
from blueprint.webhooks.handler import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature

logger = logging.getLogger(__name__)

app = FastAPI(title="Lifestyle Blueprint", version=__version__)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    logger.info(f"Lifestyle Blueprint starting up ({settings.blueprint_env})")
    logger.info(f"  Generation service: {settings.generation_api_url}")
    logger.info(f"  Webhook signatures: {'verified' if settings.webhook_secret else 'not verified'}")


@app.on_event("shutdown")
async def shutdown_event():
    services = getattr(app.state, "services", None)
    close = getattr(services.backend, "aclose", None) if services else None
    if close is not None:
        await close()


# CORS middleware for the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": __version__}


# =============================================================================
# Models
# =============================================================================


class MessageRequest(BaseModel):
    text: str


class SelectRequest(BaseModel):
    value: str


class ChangesRequest(BaseModel):
    changes: str = Field(min_length=1)


class ShoppingListRequest(BaseModel):
    items: list[dict] = Field(default_factory=list)


class FavoriteRequest(BaseModel):
    is_favorite: bool


class CaloriesRequest(BaseModel):
    """Stateless calculator input. Give either age or birth_date."""
    height_inches: float = Field(ge=MIN_HEIGHT_INCHES, le=MAX_HEIGHT_INCHES)
    weight_pounds: float = Field(ge=MIN_WEIGHT_POUNDS, le=MAX_WEIGHT_POUNDS)
    age: int | None = Field(default=None, ge=1, le=120)
    birth_date: date | None = None
    biological_sex: str = "PREFER_NOT_TO_SAY"
    activity_level: str = "2"
    health_fitness_goal: str = "MAINTENANCE"


# =============================================================================
# Helpers
# =============================================================================


def _owned_session(services: Services, session_id: str, user: AuthenticatedUser) -> StageOrchestrator:
    orchestrator = services.sessions.get(session_id)
    if orchestrator is None or orchestrator.session.user_id != user.id:
        raise HTTPException(status_code=404, detail="Session not found")
    return orchestrator


async def _owned_meal_plan(services: Services, meal_plan_id: str, user: AuthenticatedUser, action: str) -> dict:
    try:
        row = await services.store.get_meal_plan(meal_plan_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not row:
        raise HTTPException(status_code=404, detail="Meal plan not found")
    if row.get("user_id") != user.id:
        raise HTTPException(status_code=403, detail=f"Permission denied: You can only {action} your own meal plans")
    return row


def _require_self(user_id: str, user: AuthenticatedUser) -> None:
    if user_id != user.id:
        raise HTTPException(status_code=403, detail="Permission denied")


def _plan_json(row: dict) -> dict:
    return structure_meal_plan(row).model_dump(mode="json")


def _share_json(share: dict) -> dict:
    return {
        "share_token": share["share_token"],
        "share_url": f"/s/{share['share_token']}",
        "created_at": share.get("created_at"),
        "expires_at": share["expires_at"],
    }


def _session_response(orchestrator: StageOrchestrator, accepted: bool | None = None) -> dict:
    response = {"session": orchestrator.snapshot()}
    if accepted is not None:
        response["accepted"] = accepted
    return response


# =============================================================================
# Onboarding Sessions
# =============================================================================


@app.get("/api/onboarding/options")
async def onboarding_options():
    """Fixed-choice options for rendering the forms."""
    return get_form_options()


@app.post("/api/onboarding/sessions", status_code=201)
async def create_session(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Start a new onboarding conversation. Any previous one for the user is dropped."""
    orchestrator = await services.sessions.create(user.id)
    return {
        **_session_response(orchestrator),
        "events": [event.to_dict() for event in orchestrator.events.history],
    }


@app.get("/api/onboarding/sessions/current")
async def current_session(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orchestrator = services.sessions.for_user(user.id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="No active session")
    return _session_response(orchestrator)


@app.get("/api/onboarding/sessions/{session_id}")
async def get_session(
    session_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return _session_response(_owned_session(services, session_id, user))


@app.post("/api/onboarding/sessions/{session_id}/messages")
async def send_message(
    session_id: str,
    req: MessageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orchestrator = _owned_session(services, session_id, user)
    accepted = await orchestrator.route_input(req.text)
    return _session_response(orchestrator, accepted)


@app.post("/api/onboarding/sessions/{session_id}/select")
async def select_option(
    session_id: str,
    req: SelectRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orchestrator = _owned_session(services, session_id, user)
    accepted = await orchestrator.select(req.value)
    return _session_response(orchestrator, accepted)


@app.post("/api/onboarding/sessions/{session_id}/meal-plan/changes")
async def request_meal_plan_changes(
    session_id: str,
    req: ChangesRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orchestrator = _owned_session(services, session_id, user)
    accepted = await orchestrator.request_changes(req.changes)
    return _session_response(orchestrator, accepted)


@app.put("/api/onboarding/sessions/{session_id}/shopping-list")
async def save_shopping_list(
    session_id: str,
    req: ShoppingListRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orchestrator = _owned_session(services, session_id, user)
    saved = await orchestrator.save_shopping_list(req.items)
    if saved is None:
        raise HTTPException(status_code=409, detail="Shopping list can't be saved yet")
    return {"items": saved}


@app.get("/api/onboarding/sessions/{session_id}/events")
async def stream_events(
    session_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """SSE stream of the conversation's events.

    The first event is a snapshot of the session. Disconnecting does not
    stop any work in progress.
    """
    orchestrator = _owned_session(services, session_id, user)
    queue = orchestrator.events.open_queue()

    async def event_generator():
        try:
            yield {"event": "snapshot", "data": json.dumps(orchestrator.snapshot())}
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=30)
                except asyncio.TimeoutError:
                    # Keep-alive ping to prevent proxy/browser timeout
                    yield {"event": "ping", "data": ""}
                    continue
                yield {"event": event["type"], "data": json.dumps(event)}
        except asyncio.CancelledError:
            logger.info(f"Client disconnected from session {session_id} events")
        finally:
            orchestrator.events.close_queue(queue)

    return EventSourceResponse(event_generator())


# =============================================================================
# Artifacts
# =============================================================================


@app.get("/api/meal-plan/by-conversation/{conversation_id}")
async def meal_plan_by_conversation(
    conversation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        row = await services.store.get_meal_plan_by_conversation(conversation_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not row or row.get("user_id") != user.id:
        raise HTTPException(status_code=404, detail="Meal plan not found")
    return {"meal_plan": _plan_json(row)}


@app.get("/api/meal-plan/{meal_plan_id}")
async def get_meal_plan(
    meal_plan_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    row = await _owned_meal_plan(services, meal_plan_id, user, "view")
    return {"meal_plan": _plan_json(row)}


@app.get("/api/meal-plan/{meal_plan_id}/groceries")
async def get_meal_plan_groceries(
    meal_plan_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await _owned_meal_plan(services, meal_plan_id, user, "view")
    try:
        items = await services.store.get_shopping_list(meal_plan_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"items": items, "by_category": group_shopping_list(items)}


@app.put("/api/meal-plan/{meal_plan_id}/favorite")
async def set_meal_plan_favorite(
    meal_plan_id: str,
    req: FavoriteRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await _owned_meal_plan(services, meal_plan_id, user, "modify")
    try:
        row = await services.store.set_meal_plan_favorite(meal_plan_id, req.is_favorite)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if row is None:
        raise HTTPException(status_code=404, detail="Meal plan not found")
    return {
        "success": True,
        "message": "Favorite status updated successfully",
        "meal_plan": _plan_json(row),
    }


@app.post("/api/meal-plan/{meal_plan_id}/share")
async def share_meal_plan(
    meal_plan_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Share link for a meal plan. An unexpired link is reused."""
    await _owned_meal_plan(services, meal_plan_id, user, "share")
    try:
        share = await services.store.share_meal_plan(user.id, meal_plan_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, "message": "Share link created successfully", **_share_json(share)}


@app.post("/api/meal-plan/clone/{meal_plan_id}", status_code=201)
async def clone_meal_plan(
    meal_plan_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Copy one of the user's meal plans, with its shopping list, as a new draft."""
    original = await _owned_meal_plan(services, meal_plan_id, user, "clone")
    try:
        row = await services.store.clone_meal_plan(user.id, original)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "success": True,
        "message": "Meal plan cloned successfully",
        "meal_plan": _plan_json(row),
    }


@app.get("/api/user/{user_id}/meal-plans")
async def meal_plan_history(
    user_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """The user's meal plans, newest first."""
    _require_self(user_id, user)
    try:
        rows = await services.store.list_meal_plans(user_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"meal_plans": [_plan_json(row) for row in rows]}


@app.get("/api/user/{user_id}/data")
async def user_data(
    user_id: str,
    conversation_id: str | None = None,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Everything collected about the user, as the generation service reads it."""
    _require_self(user_id, user)
    try:
        return await services.store.get_all_user_data(user_id, conversation_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


# =============================================================================
# Shared Meal Plans
# =============================================================================


async def _shared(services: Services, share_token: str) -> dict:
    try:
        shared = await services.store.get_shared_meal_plan(share_token)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if shared is None:
        raise HTTPException(status_code=404, detail="Share link not found or expired")
    return shared


@app.get("/api/shared/{share_token}")
async def shared_meal_plan(share_token: str, services: Services = Depends(get_services)):
    """Public, read-only view of a shared meal plan."""
    shared = await _shared(services, share_token)
    return {"meal_plan": _plan_json(shared["meal_plan"]), "share": _share_json(shared["share"])}


@app.get("/api/shared/{share_token}/shopping-list")
async def shared_shopping_list(share_token: str, services: Services = Depends(get_services)):
    shared = await _shared(services, share_token)
    try:
        items = await services.store.get_shopping_list(shared["meal_plan"]["meal_plan_id"])
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"items": items, "by_category": group_shopping_list(items)}


# =============================================================================
# Service Callbacks
# =============================================================================


@app.post("/api/progress/{conversation_id}")
async def post_progress(
    conversation_id: str,
    payload: dict,
    x_progress_token: str | None = Header(None),
    services: Services = Depends(get_services),
):
    """Progress from the generation service, relayed to the conversation."""
    if settings.progress_token and x_progress_token != settings.progress_token:
        raise HTTPException(status_code=401, detail="Invalid progress token")
    update = ProgressUpdate.from_payload(payload)
    delivered = services.relay.publish(conversation_id, update)
    return {"delivered": delivered}


@app.post("/api/webhook")
async def assistant_webhook(request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    if not verify_signature(
        settings.webhook_secret,
        body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        return await services.webhooks.handle(event)
    except WebhookError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Webhook error")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# Calculator
# =============================================================================


@app.post("/api/calories")
async def calculate_calories(req: CaloriesRequest):
    """Stateless calorie and macro calculation."""
    if req.age is None and req.birth_date is None:
        raise HTTPException(status_code=422, detail="Provide age or birth_date")
    age = req.age if req.age is not None else age_from_birth_date(req.birth_date)
    inputs = CalorieInputs(
        height_inches=req.height_inches,
        weight_pounds=req.weight_pounds,
        age=age,
        sex=resolve_sex(req.biological_sex),
        activity_level=resolve_activity_level(req.activity_level),
        goal=resolve_fitness_goal(req.health_fitness_goal),
    )
    result = calculate_all(inputs)
    return {**result.to_dict(), "record": result.to_record()}
