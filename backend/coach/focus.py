"""Focus set endpoints: read the current focus, confirm a proposal, and set the focus size."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, Field

from .auth import get_current_user_id
from .database import get_db_connection
from .services import priority_store
from .services.state_reader import read_focus

router = APIRouter(prefix="/focus", tags=["focus"])


class FocusItemRequest(BaseModel):
    goal_instance_id: UUID = Field(validation_alias=AliasChoices("goal_instance_id", "goalInstanceId"))
    rank: int | None = Field(default=None, ge=1)
    reason: str | None = Field(default=None, max_length=500)


class FocusApplyRequest(BaseModel):
    items: list[FocusItemRequest] = Field(default_factory=list, max_length=5)
    source_thread_id: str | None = Field(default=None, max_length=100)


class FocusConfigRequest(BaseModel):
    focus_goal_limit: int = Field(ge=3, le=5)


class FocusSnapshotResponse(BaseModel):
    id: UUID
    items: list[dict[str, Any]]
    source_thread_id: str | None = None
    created_at: datetime


class FocusConfigResponse(BaseModel):
    focus_goal_limit: int


@router.get("")
async def get_focus(
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> dict[str, Any]:
    focus = await read_focus(connection, user_id)
    focus["focus_goal_limit"] = await priority_store.get_focus_limit(connection, user_id)
    return focus


@router.post("/priorities", response_model=FocusSnapshotResponse, status_code=201)
async def apply_priorities(
    payload: FocusApplyRequest,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> FocusSnapshotResponse:
    """Persist an accepted prioritization card. An empty list clears the focus set."""
    items = [
        {"goalInstanceId": str(item.goal_instance_id), "rank": item.rank, "reason": item.reason}
        for item in payload.items
    ]

    try:
        if items:
            snapshot = await priority_store.apply(connection, user_id, items, payload.source_thread_id)
        else:
            snapshot = await priority_store.clear(connection, user_id, payload.source_thread_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return FocusSnapshotResponse(
        id=snapshot["id"],
        items=snapshot["items"],
        source_thread_id=snapshot.get("source_thread_id"),
        created_at=snapshot["created_at"],
    )


@router.post("/config", response_model=FocusConfigResponse)
async def update_focus_config(
    payload: FocusConfigRequest,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> FocusConfigResponse:
    try:
        limit = await priority_store.set_focus_limit(connection, user_id, payload.focus_goal_limit)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return FocusConfigResponse(focus_goal_limit=limit)
