"""feedback_yes_no: ask the user a yes/no question and report the answer to the model."""

from __future__ import annotations

import logging
from typing import Any

from . import AskCallback, ToolHandler

logger = logging.getLogger(__name__)

DEFINITION: dict[str, Any] = {
    "name": "feedback_yes_no",
    "description": (
        "Ask the user a short yes/no question when you need a quick decision or confirmation "
        "before continuing. Returns the user's answer."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The yes/no question to show the user.",
            },
        },
        "required": ["question"],
    },
}

_YES = {"yes", "y", "true", "1", "ok", "sure"}


def _normalize_answer(answer: str | bool | None) -> str:
    if isinstance(answer, bool):
        return "yes" if answer else "no"
    if isinstance(answer, str) and answer.strip().lower() in _YES:
        return "yes"
    return "no"


def make_handler(ask: AskCallback | None = None) -> ToolHandler:
    async def handle(arguments: dict[str, Any]) -> dict[str, Any]:
        question = arguments.get("question")
        if not isinstance(question, str) or not question.strip():
            return {"error": "Missing or invalid question parameter."}
        if ask is None:
            logger.debug("No feedback prompt configured, answering 'no' to: %s", question)
            return {"answer": "no", "question": question}
        answer = await ask(question)
        return {"answer": _normalize_answer(answer), "question": question}

    return handle
