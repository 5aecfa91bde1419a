"""One coach turn: ask the model, run the actions it names, feed results back, repeat until it answers."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from coach.ai.coach_prompt import COACH_SYSTEM_PROMPT, FALLBACK_REPLY
from coach.ai.coach_tools import CoachToolArgumentError, ToolContext, coach_tool_schemas, dispatch_coach_tool
from coach.ai.gemini_client import GeminiClient
from coach.config import settings

logger = logging.getLogger(__name__)

CardSink = Callable[[dict[str, Any]], None]


@dataclass
class AgentTurnResult:
    final_text: str
    cards: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    iterations: int = 0
    exhausted: bool = False


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_jsonable(item) for item in value]
    return value


def _history_messages(history: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for message in history or []:
        role = message.get("role")
        content = str(message.get("content") or "").strip()
        if role in {"user", "assistant"} and content:
            messages.append({"role": role, "content": content})
    return messages


async def run_agent_turn(
    client: GeminiClient,
    ctx: ToolContext,
    user_message: str,
    history: list[dict[str, Any]] | None = None,
    *,
    system_prompt: str = COACH_SYSTEM_PROMPT,
    max_iterations: int | None = None,
    on_card: CardSink | None = None,
) -> AgentTurnResult:
    """
    Drive the model through at most `max_iterations` decisions.

    Actions run one at a time in the order the model asked for them, and
    each one reads fresh state, so later actions see earlier writes. Action
    failures are reported back to the model rather than raised. Cards are
    handed to `on_card` as soon as their action finishes.
    """
    limit = max_iterations or settings.max_agent_iterations
    base_messages = _history_messages(history) + [{"role": "user", "content": user_message}]
    scratchpad: list[dict[str, Any]] = []
    schemas = coach_tool_schemas()

    turn = AgentTurnResult(final_text="")
    last_text = ""

    for iteration in range(1, limit + 1):
        turn.iterations = iteration
        result = await client.generate_with_tools(
            system_prompt=system_prompt,
            conversation_messages=base_messages + scratchpad,
            tool_schemas=schemas,
        )

        if result.text_response:
            last_text = result.text_response

        if not result.tool_calls:
            turn.final_text = result.text_response or last_text or FALLBACK_REPLY
            return turn

        if result.text_response:
            scratchpad.append({"role": "assistant", "content": result.text_response})

        for call in result.tool_calls:
            try:
                tool_result = await dispatch_coach_tool(ctx, call.name, call.arguments)
            except (CoachToolArgumentError, ValueError, LookupError) as exc:
                logger.info("Action %s rejected: %s", call.name, exc)
                turn.actions.append({"tool": call.name, "kind": "error", "summary": str(exc)})
                scratchpad.append(
                    {
                        "role": "tool",
                        "name": call.name,
                        "content": json.dumps({"tool": call.name, "kind": "error", "error": str(exc)}),
                    }
                )
                continue

            card = tool_result.get("card")
            if card is not None:
                turn.cards.append(card)
                if on_card is not None:
                    on_card(card)

            turn.actions.append({"tool": call.name, "kind": tool_result["kind"], "summary": tool_result["summary"]})
            tool_payload = {
                "tool": call.name,
                "kind": tool_result["kind"],
                "summary": tool_result["summary"],
                "data": _to_jsonable(tool_result["data"]),
            }
            scratchpad.append(
                {
                    "role": "tool",
                    "name": call.name,
                    "content": json.dumps(tool_payload, separators=(",", ":")),
                }
            )

    logger.warning("Agent turn hit the %s-iteration cap", limit)
    turn.exhausted = True
    turn.final_text = last_text or FALLBACK_REPLY
    return turn
