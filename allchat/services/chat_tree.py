"""Flattening of the chat branch forest into a display list."""

from collections.abc import Sequence
from typing import Protocol, TypeVar


class BranchNode(Protocol):
    id: int
    source_chat_id: int | None


NodeT = TypeVar("NodeT", bound=BranchNode)


def flatten_chat_forest(chats: Sequence[NodeT]) -> list[tuple[NodeT, int]]:
    """Order chats depth-first so every branch follows its source chat.

    Sibling order is the order of ``chats``. A chat whose source is absent
    from ``chats`` is treated as a root. Each entry is ``(chat, depth)``.
    """
    known = {chat.id for chat in chats}
    children: dict[int, list[NodeT]] = {}
    roots: list[NodeT] = []
    for chat in chats:
        parent = chat.source_chat_id
        if parent is None or parent not in known or parent == chat.id:
            roots.append(chat)
        else:
            children.setdefault(parent, []).append(chat)

    ordered: list[tuple[NodeT, int]] = []
    visited: set[int] = set()
    stack: list[tuple[NodeT, int]] = [(root, 0) for root in reversed(roots)]
    while stack:
        chat, depth = stack.pop()
        if chat.id in visited:
            continue
        visited.add(chat.id)
        ordered.append((chat, depth))
        for child in reversed(children.get(chat.id, [])):
            stack.append((child, depth + 1))

    # Cycles never reach a root; surface them at the top level.
    for chat in chats:
        if chat.id not in visited:
            visited.add(chat.id)
            ordered.append((chat, 0))
    return ordered
