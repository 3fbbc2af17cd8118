"""Shared builders for test conversations."""

from roleplay_chat.llm.types import (
    CharacterProfile,
    ConversationContext,
    Credentials,
    GenerationRequest,
    GenerationSettings,
    RequestKind,
)


def word_count(text: str) -> int:
    return len(text.split())


def x_count(text: str) -> int:
    """Costs one token per standalone ``x``; everything else is free."""
    return text.split().count("x")


def xs(n: int) -> str:
    return " ".join(["x"] * n)


def make_context(lines=(), inserts=None, **kwargs) -> ConversationContext:
    return ConversationContext(
        reply_as=CharacterProfile(name="Aria", persona="A curious android.", scenario="A quiet space station."),
        sender="Sam",
        lines=list(lines),
        inserts=dict(inserts or {}),
        **kwargs,
    )


def make_request(
    lines=(),
    inserts=None,
    kind: RequestKind = RequestKind.CHAT,
    credentials: Credentials | None = None,
    context: ConversationContext | None = None,
    **settings,
) -> GenerationRequest:
    return GenerationRequest(
        request_id="req-1",
        kind=kind,
        user_id="user-1",
        context=context or make_context(lines, inserts),
        settings=GenerationSettings(**settings),
        credentials=credentials or Credentials(api_key="sk-test"),
    )
