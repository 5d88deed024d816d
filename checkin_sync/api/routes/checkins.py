from typing import TypeVar
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response

from checkin_sync.api.deps import get_participant
from checkin_sync.core.errors import CheckInValidationError, NoActiveCheckInError
from checkin_sync.schemas.checkin import (
    ActionItem,
    ActionItemDraft,
    ActionItemPatch,
    CategoryProgressPatch,
    CheckInStateOut,
    CompleteCheckInIn,
    Note,
    NoteDraft,
    NotePatch,
    SelectCategoriesIn,
    StartCheckInIn,
    StepIn,
)
from checkin_sync.services.clock import SessionClock, TurnClock
from checkin_sync.services.gateway import GatewayResult
from checkin_sync.services.registry import ParticipantRuntime

router = APIRouter(prefix="/api/checkins", tags=["checkins"])

T = TypeVar("T")

TIMER_ACTIONS = {
    "start": SessionClock.start,
    "pause": SessionClock.pause,
    "resume": SessionClock.resume,
    "reset": SessionClock.reset,
}


def _unwrap(result: GatewayResult[T]) -> T:
    # CheckInError subclasses are mapped to responses by the app's exception handler
    if not result.ok:
        raise result.error
    return result.data


def _require_session(rt: ParticipantRuntime) -> None:
    if rt.store.session is None:
        raise NoActiveCheckInError("No active check-in")


@router.get("/current", response_model=CheckInStateOut)
async def current(rt: ParticipantRuntime = Depends(get_participant)):
    return rt.state()


@router.post("", response_model=CheckInStateOut, status_code=201)
async def start(payload: StartCheckInIn, rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.start_check_in(payload.categories, payload.mood_before))
    return rt.state()


@router.put("/categories", response_model=CheckInStateOut)
async def select_categories(payload: SelectCategoriesIn, rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.select_categories(payload.categories))
    return rt.state()


@router.patch("/categories/{category_id}", response_model=CheckInStateOut)
async def update_category_progress(category_id: str, payload: CategoryProgressPatch, rt: ParticipantRuntime = Depends(get_participant)):
    _require_session(rt)
    if not rt.store.update_category_progress(category_id, **payload.model_dump(exclude_none=True)):
        raise CheckInValidationError(f"Category {category_id} is not part of this check-in")
    return rt.state()


@router.post("/steps/complete", response_model=CheckInStateOut)
async def complete_step(payload: StepIn, rt: ParticipantRuntime = Depends(get_participant)):
    _require_session(rt)
    rt.store.complete_step(payload.step)
    return rt.state()


@router.put("/steps/current", response_model=CheckInStateOut)
async def go_to_step(payload: StepIn, rt: ParticipantRuntime = Depends(get_participant)):
    _require_session(rt)
    if not rt.store.can_go_to_step(payload.step):
        raise CheckInValidationError(f"Cannot skip ahead to {payload.step}")
    rt.store.go_to_step(payload.step)
    return rt.state()


@router.post("/notes", response_model=Note, status_code=201)
async def add_note(payload: NoteDraft, rt: ParticipantRuntime = Depends(get_participant)):
    return _unwrap(await rt.store.add_draft_note(
        payload.content,
        privacy=payload.privacy,
        tags=payload.tags,
        category_id=payload.category_id,
    ))


@router.patch("/notes/{note_id}", response_model=Note)
async def update_note(note_id: UUID, payload: NotePatch, rt: ParticipantRuntime = Depends(get_participant)):
    return _unwrap(await rt.store.update_draft_note(note_id, **payload.model_dump(exclude_none=True)))


@router.delete("/notes/{note_id}", status_code=204)
async def remove_note(note_id: UUID, rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.remove_draft_note(note_id))
    return Response(status_code=204)


@router.post("/action-items", response_model=ActionItem, status_code=201)
async def add_action_item(payload: ActionItemDraft, rt: ParticipantRuntime = Depends(get_participant)):
    return _unwrap(await rt.store.add_action_item(
        payload.title,
        description=payload.description,
        assigned_to=payload.assigned_to,
        due_date=payload.due_date,
    ))


@router.patch("/action-items/{action_item_id}", response_model=ActionItem)
async def update_action_item(action_item_id: UUID, payload: ActionItemPatch, rt: ParticipantRuntime = Depends(get_participant)):
    return _unwrap(await rt.store.update_action_item(action_item_id, **payload.model_dump(exclude_unset=True)))


@router.delete("/action-items/{action_item_id}", status_code=204)
async def remove_action_item(action_item_id: UUID, rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.remove_action_item(action_item_id))
    return Response(status_code=204)


@router.post("/action-items/{action_item_id}/toggle", response_model=ActionItem)
async def toggle_action_item(action_item_id: UUID, rt: ParticipantRuntime = Depends(get_participant)):
    return _unwrap(await rt.store.toggle_action_item(action_item_id))


@router.post("/complete", response_model=CheckInStateOut)
async def complete(payload: CompleteCheckInIn, rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.complete_check_in(payload.mood_after, payload.reflection))
    return rt.state()


@router.post("/abandon", response_model=CheckInStateOut)
async def abandon(rt: ParticipantRuntime = Depends(get_participant)):
    _unwrap(await rt.store.abandon_check_in())
    return rt.state()


@router.post("/timer/{action}", response_model=CheckInStateOut)
async def timer(action: str, rt: ParticipantRuntime = Depends(get_participant)):
    op = TIMER_ACTIONS.get(action)
    if op is None:
        raise HTTPException(status_code=404, detail=f"Unknown timer action {action}")
    op(rt.session_clock)
    return rt.state()


@router.post("/turn/{action}", response_model=CheckInStateOut)
async def turn(action: str, rt: ParticipantRuntime = Depends(get_participant)):
    clock: TurnClock = rt.turn_clock
    if action == "start":
        clock.start()
    elif action == "stop":
        clock.stop()
    elif action == "switch":
        clock.switch_turn()
    elif action == "extend":
        if not clock.extend_turn():
            raise CheckInValidationError("No turn extensions left")
    else:
        raise HTTPException(status_code=404, detail=f"Unknown turn action {action}")
    return rt.state()
