"""Normalize provider event streams into Token / SoftError / HardError / Done.

Each provider family registers a decoder that maps a raw SSE frame to one of a
few normalized frame shapes. The stream itself is a fold over those frames:
``transition`` is pure, so the whole thing can be replayed without a network.
"""

import json
import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, AsyncIterable, AsyncIterator, Callable, Iterable, Optional, Union

from .types import Done, HardError, SoftError, SSEFrame, StreamEvent, Token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delta:
    """Incremental text, possibly empty, plus metadata to merge."""
    text: str = ""
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FrameError:
    message: str


@dataclass(frozen=True)
class Skip:
    """A frame with no content, e.g. a keep-alive ping."""


@dataclass(frozen=True)
class Unknown:
    kind: str
    data: str = ""


DecodedFrame = Union[Delta, FrameError, Skip, Unknown]
Decoder = Callable[[SSEFrame], DecodedFrame]


# Claude


_CLAUDE_SKIPPED = {"ping", "content_block_start", "content_block_stop", "message_stop"}
_CLAUDE_TEXT_FIELDS = {"completion", "delta", "text", "type", "index"}


def _interrupted(message: Optional[str]) -> str:
    if message:
        return f"Anthropic interrupted the response: {message}"
    return "Anthropic interrupted the response."


def _load(data: str) -> Optional[dict]:
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def decode_claude(frame: SSEFrame) -> DecodedFrame:
    """Decode Messages API and legacy Complete API stream events."""
    if frame.error is not None:
        return FrameError(_interrupted(frame.error))

    kind = frame.event
    if kind in _CLAUDE_SKIPPED:
        return Skip()

    payload = _load(frame.data)
    if kind == "error":
        error = (payload or {}).get("error") or {}
        return FrameError(_interrupted(error.get("message") if isinstance(error, dict) else str(error)))

    if kind not in ("completion", "content_block_delta", "message_start", "message_delta"):
        return Unknown(kind, frame.data)
    if payload is None:
        return FrameError(_interrupted(f"malformed {kind} event"))

    if kind == "message_start":
        message = payload.get("message") or {}
        return Delta(meta={"model": message.get("model", ""), "id": message.get("id")})

    if kind == "message_delta":
        delta = payload.get("delta") or {}
        return Delta(meta={"stop_reason": delta.get("stop_reason"), "stop": delta.get("stop_sequence")})

    # Text may arrive as a legacy completion, a content delta, or a bare text field.
    text = payload.get("completion") or (payload.get("delta") or {}).get("text") or payload.get("text") or ""
    meta = {key: value for key, value in payload.items() if key not in _CLAUDE_TEXT_FIELDS}
    return Delta(text=text, meta=meta)


_DECODERS: dict[str, Decoder] = {"claude": decode_claude}


def register_decoder(family: str, decoder: Decoder) -> None:
    _DECODERS[family] = decoder


def get_decoder(family: str) -> Decoder:
    try:
        return _DECODERS[family]
    except KeyError:
        raise ValueError(f"No stream decoder registered for {family!r}") from None


# Fold


@dataclass(frozen=True)
class StreamState:
    parts: tuple[str, ...] = ()
    meta: dict[str, Any] = field(default_factory=dict)
    finished: bool = False

    @property
    def text(self) -> str:
        return "".join(self.parts)

    @property
    def tokens(self) -> int:
        return len(self.parts)

    def done(self) -> Done:
        return Done({**self.meta, "completion": self.text})


def transition(state: StreamState, frame: DecodedFrame) -> tuple[StreamState, tuple[StreamEvent, ...]]:
    """Advance the stream by one frame. Returns the new state and the events to emit."""
    if state.finished:
        return state, ()

    if isinstance(frame, FrameError):
        finished = StreamState(state.parts, state.meta, finished=True)
        if not state.parts:
            return finished, (HardError(frame.message),)
        # Partial output is kept; the caller is told about the interruption.
        return finished, (SoftError(frame.message), finished.done())

    if isinstance(frame, Delta):
        meta = {**state.meta, **frame.meta}
        if not frame.text:
            return StreamState(state.parts, meta), ()
        return StreamState(state.parts + (frame.text,), meta), (Token(frame.text),)

    return state, ()


def finish(state: StreamState) -> tuple[StreamEvent, ...]:
    """Events for a stream that ended normally."""
    if state.finished:
        return ()
    return (state.done(),)


def _observe(frame: DecodedFrame) -> DecodedFrame:
    if isinstance(frame, Unknown):
        logger.warning("Ignoring unrecognized stream event %r: %.200s", frame.kind, frame.data)
    elif isinstance(frame, FrameError):
        logger.warning("Received stream error event: %s", frame.message)
    return frame


def replay(frames: Iterable[DecodedFrame]) -> list[StreamEvent]:
    """Fold a finite sequence of decoded frames into the events it produces."""

    def step(acc, frame):
        state, events = acc
        state, emitted = transition(state, _observe(frame))
        return state, events + list(emitted)

    state, events = reduce(step, frames, (StreamState(), []))
    return events + list(finish(state))


async def normalize_stream(frames: AsyncIterable[SSEFrame], decode: Decoder) -> AsyncIterator[StreamEvent]:
    """Single pass over a live stream. Stops reading after a terminal error."""
    state = StreamState()
    async for raw in frames:
        state, emitted = transition(state, _observe(decode(raw)))
        for event in emitted:
            yield event
        if state.finished:
            return
    for event in finish(state):
        yield event
