"""Cleanup applied to every partial and to the final completion."""

from dataclasses import dataclass, field
from typing import Optional

from .types import ConversationContext

CONTROL_MARKERS = ("</s>", "<|endoftext|>", "<|im_end|>", "<|eot_id|>")


@dataclass
class SanitizeContext:
    prompt: Optional[str] = None
    reply_as: str = ""
    speakers: set[str] = field(default_factory=set)
    stop_sequences: set[str] = field(default_factory=set)

    @classmethod
    def for_request(
        cls,
        ctx: ConversationContext,
        prompt: Optional[str] = None,
        stop_sequences: Optional[set[str]] = None,
    ) -> "SanitizeContext":
        return cls(
            prompt=prompt,
            reply_as=ctx.reply_as.name,
            speakers=ctx.speaker_names(),
            stop_sequences=set(stop_sequences or ()),
        )

    def cut_points(self) -> list[str]:
        cuts = [stop for stop in self.stop_sequences if stop]
        cuts.extend(f"\n{name}:" for name in self.speakers)
        return cuts


def _truncate(text: str, cuts: list[str]) -> str:
    end = len(text)
    for cut in cuts:
        index = text.find(cut)
        if index != -1:
            end = min(end, index)
    return text[:end]


def _trim_markers(text: str) -> str:
    text = text.strip()
    for marker in CONTROL_MARKERS:
        if text.startswith(marker):
            text = text[len(marker):]
        if text.endswith(marker):
            text = text[: -len(marker)]
    return text.strip()


def _sanitize_once(text: str, context: SanitizeContext) -> str:
    if context.prompt and text.startswith(context.prompt):
        text = text[len(context.prompt):]
    text = _truncate(text, context.cut_points())
    text = _trim_markers(text)
    label = f"{context.reply_as}:"
    if context.reply_as and text.startswith(label):
        text = text[len(label):]
    return text.strip()


def sanitize(text: str, context: SanitizeContext) -> str:
    """Strip echoed prompt text, cut at stop sequences and other speakers' lines,
    and trim labels and control markers.

    Each pass only removes text, so the result is a fixpoint and sanitizing it
    again changes nothing.
    """
    while True:
        cleaned = _sanitize_once(text, context)
        if cleaned == text:
            return cleaned
        text = cleaned
