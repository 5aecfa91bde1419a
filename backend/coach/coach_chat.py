"""Conversational coach endpoint (`POST /coach/chat`)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Literal
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from .ai.agent import run_agent_turn
from .ai.coach_prompt import COACH_SYSTEM_PROMPT, ERROR_REPLY
from .ai.coach_tools import ToolContext
from .ai.gemini_client import GeminiClient, GeminiError
from .ai.title_extraction import build_title_extractor
from .auth import get_current_user_id
from .config import settings
from .database import get_db_connection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coach", tags=["coach-chat"])

MAX_HISTORY_MESSAGES = 20


class ChatHistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=8000)


class CoachChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    thread_id: str | None = Field(default=None, max_length=100)
    history: list[ChatHistoryMessage] = Field(default_factory=list)


class CoachChatActionItem(BaseModel):
    tool: str
    kind: str
    summary: str


class CoachChatResponse(BaseModel):
    reply: str
    thread_id: str
    actions: list[CoachChatActionItem] = Field(default_factory=list)
    cards: list[dict[str, Any]] = Field(default_factory=list)


def _get_gemini_client() -> GeminiClient:
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
    )


@router.post("/chat", response_model=CoachChatResponse)
async def coach_chat(
    payload: CoachChatRequest,
    user_id: UUID = Depends(get_current_user_id),
    connection: Any = Depends(get_db_connection),
) -> CoachChatResponse:
    """
    One coach turn.

    History is supplied by the client; nothing about the conversation is
    kept server-side. Cards in the response are proposals or receipts. A
    prioritization card only becomes the focus set via `POST /focus/priorities`.
    """
    message_text = payload.message.strip()
    if not message_text:
        raise HTTPException(status_code=422, detail="message must not be empty")

    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=503,
            detail="Coach is unavailable because GEMINI_API_KEY is not configured.",
        )

    thread_id = payload.thread_id or str(uuid.uuid4())
    client = _get_gemini_client()
    ctx = ToolContext(
        connection=connection,
        user_id=user_id,
        thread_id=thread_id,
        extractor=build_title_extractor(client, temperature=settings.extraction_temperature),
    )
    history = [message.model_dump() for message in payload.history[-MAX_HISTORY_MESSAGES:]]

    try:
        turn = await run_agent_turn(
            client,
            ctx,
            message_text,
            history,
            system_prompt=COACH_SYSTEM_PROMPT,
            max_iterations=settings.max_agent_iterations,
        )
    except (GeminiError, psycopg.Error):
        logger.exception("Coach turn failed for thread %s", thread_id)
        return CoachChatResponse(reply=ERROR_REPLY, thread_id=thread_id)

    return CoachChatResponse(
        reply=turn.final_text,
        thread_id=thread_id,
        actions=[CoachChatActionItem(**action) for action in turn.actions],
        cards=turn.cards,
    )
