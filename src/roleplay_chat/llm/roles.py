"""Role normalization for providers with strict turn alternation and no system role."""

from .types import ChatMessage

# The first turn must carry content.
PLACEHOLDER = "..."
TURN_SEPARATOR = "\n\n"


def normalize_roles(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Return ``(system, turns)`` where turns alternate roles and start with ``user``.

    A leading system turn is moved to the system field, later system turns are sent
    as the user, and adjacent turns sharing a role are merged in order.
    """
    system = ""
    turns = [ChatMessage(role=m.role, content=m.content) for m in messages]

    if turns and turns[0].role == "system":
        system = turns[0].content
        turns[0] = ChatMessage(role="user", content=PLACEHOLDER)

    merged: list[ChatMessage] = []
    for turn in turns:
        role = "user" if turn.role == "system" else turn.role
        if merged and merged[-1].role == role:
            merged[-1].content += TURN_SEPARATOR + turn.content
            continue
        merged.append(ChatMessage(role=role, content=turn.content))

    if merged and merged[0].role != "user":
        merged.insert(0, ChatMessage(role="user", content=PLACEHOLDER))

    return system, merged
