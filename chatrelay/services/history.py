"""
Conversation history helpers shared by the server and the client engine.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Sequence

from chatrelay.errors import ValidationError
from chatrelay.models import ConversationTurn, ToolResultBlock

NO_RESULTS_MESSAGE = (
    "No results found. The tool returned an empty result for this request; "
    "try a different query or tell the user nothing matched."
)

_DEGENERATE_TOOL_CONTENT = {"", "[]", "{}", "null"}


def validate_pairing(turns: Sequence[ConversationTurn]) -> None:
    """
    Every tool_result must follow a tool_use with the same id.

    Raises:
        ValidationError: a tool_result has no earlier matching tool_use
    """
    seen: set[str] = set()
    for index, turn in enumerate(turns):
        for tool_use_id in turn.tool_result_ids():
            if tool_use_id not in seen:
                raise ValidationError(
                    "tool_result without a preceding tool_use",
                    details={"tool_use_id": tool_use_id, "index": index},
                )
        seen |= turn.tool_use_ids()


def trim_history(turns: Sequence[ConversationTurn], target_count: int) -> List[ConversationTurn]:
    """
    Keep roughly the last ``target_count`` turns without orphaning tool results.

    Walks backward from the newest turn. Every retained tool_result pulls in
    the turn carrying its tool_use even when that turn lies outside the
    window, so the result can exceed ``target_count``. Turns in between that
    are neither in the window nor required are skipped.
    """
    required: set[str] = set()
    collected: List[ConversationTurn] = []

    for turn in reversed(turns):
        must_include = False

        result_ids = turn.tool_result_ids()
        if result_ids:
            required |= result_ids
            must_include = True

        use_ids = turn.tool_use_ids() & required
        if use_ids:
            required -= use_ids
            must_include = True

        if not must_include and len(collected) < target_count:
            must_include = True

        if must_include:
            collected.append(turn)

        if len(collected) >= target_count and not required:
            break

    collected.reverse()
    return collected


def is_degenerate_tool_content(content: Any) -> bool:
    if content is None:
        return True
    if isinstance(content, str):
        return content.strip() in _DEGENERATE_TOOL_CONTENT
    if isinstance(content, (list, dict)):
        return not content
    return False


def _last_tool_result(turns: Iterable[ConversationTurn], tool_use_id: str) -> ToolResultBlock | None:
    for turn in reversed(list(turns)):
        for block in reversed(turn.content):
            if isinstance(block, ToolResultBlock) and block.tool_use_id == tool_use_id:
                return block
    return None


def ensure_tool_result(
    turns: List[ConversationTurn],
    tool_use_id: str,
    content: str,
    *,
    is_error: bool = False,
) -> List[ConversationTurn]:
    """
    Return ``turns`` with a tool_result for ``tool_use_id``, appending one when missing.
    """
    if _last_tool_result(turns, tool_use_id) is not None:
        return list(turns)
    return [
        *turns,
        ConversationTurn.tool_result(tool_use_id, content, is_error=is_error),
    ]


def rewrite_empty_tool_result(
    turns: List[ConversationTurn], tool_use_id: str
) -> List[ConversationTurn]:
    """
    Replace degenerate content (``""``, ``"[]"``, ``"{}"``, ``"null"``) of the last
    tool_result for ``tool_use_id`` with ``NO_RESULTS_MESSAGE``.
    """
    block = _last_tool_result(turns, tool_use_id)
    if block is not None and is_degenerate_tool_content(block.content):
        block.content = NO_RESULTS_MESSAGE
    return turns


def history_to_api(turns: Iterable[ConversationTurn]) -> List[dict]:
    return [turn.to_api() for turn in turns]


__all__ = [
    "NO_RESULTS_MESSAGE",
    "ensure_tool_result",
    "history_to_api",
    "is_degenerate_tool_content",
    "rewrite_empty_tool_result",
    "trim_history",
    "validate_pairing",
]
