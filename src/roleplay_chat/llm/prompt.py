"""Prompt assembly under a hard token budget.

The builder keeps the largest suffix of the scrollback that fits in
``max_context_length - max_tokens`` once the fixed content (preamble, prefill,
journal block, inserts, reply label) has been paid for. Inserts are anchored by
their distance from the bottom of the scrollback and are never dropped.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import BudgetExceeded, PromptTemplateError
from .roles import PLACEHOLDER, TURN_SEPARATOR
from .tokenize import TokenCounter
from .types import (
    AssembledPrompt,
    ChatMessage,
    ConversationContext,
    GenerationRequest,
    RequestKind,
    Role,
)

logger = logging.getLogger(__name__)

# Some API keys require that prompts start with this
MANDATORY_PREFIX = "\n\nHuman: "
ASSISTANT_OPENER = "\n\nAssistant: "

START_REPLACE = "<START>"
SAMPLE_CHAT_MARKER = "System: New conversation started. Previous conversations are examples only."

_PLACEHOLDER_ALIASES = (
    (re.compile(r"<bot>", re.IGNORECASE), "{{char}}"),
    (re.compile(r"<user>", re.IGNORECASE), "{{user}}"),
)

_template_env = SandboxedEnvironment(autoescape=False)


RoleRule = Callable[[str, ConversationContext], bool]

# Checked in order, first match wins. Lines matching none are the character's.
ROLE_RULES: tuple[tuple[Role, RoleRule], ...] = (
    (Role.USER, lambda line, ctx: line.startswith(f"{ctx.sender_name}:")),
    (Role.SYSTEM, lambda line, ctx: line.startswith("System:")),
    (Role.EXAMPLE, lambda line, ctx: line.startswith(ctx.sample_marker)),
)

CHAT_ROLES = {
    Role.USER: "user",
    Role.ASSISTANT: "assistant",
    Role.SYSTEM: "system",
    Role.EXAMPLE: "system",
}


def classify_line(line: str, ctx: ConversationContext) -> Role:
    for role, matches in ROLE_RULES:
        if matches(line, ctx):
            return role
    return Role.ASSISTANT


def _strip_system_label(line: str) -> str:
    if line.startswith("System:"):
        return line[len("System:"):].lstrip()
    return line


def _example_body(line: str) -> str:
    return line.replace(START_REPLACE, "<mod>New conversation started.</mod>").replace(
        "\n" + SAMPLE_CHAT_MARKER, ""
    )


def format_line(role: Role, line: str) -> str:
    """Render a line in the Human/Assistant text-completion format."""
    if role is Role.USER:
        return f"\n\nHuman: {line}"
    if role is Role.SYSTEM:
        return f"\n\nSystem: {_strip_system_label(line)}"
    if role is Role.EXAMPLE:
        return f"\n\nHuman:\n<example_dialogue>\n{_example_body(line)}\n</example_dialogue>"
    return f"\n\nAssistant: {line}"


def chat_content(role: Role, line: str) -> str:
    """Render a line as the content of a chat turn."""
    if role is Role.SYSTEM:
        return _strip_system_label(line)
    if role is Role.EXAMPLE:
        return f"<example_dialogue>\n{_example_body(line)}\n</example_dialogue>"
    return line


def render_template(template: str, ctx: ConversationContext) -> str:
    """Fill a preamble/journal template.

    ``{{history}}`` and ``{{post}}`` render empty: the builder places history itself.
    """
    source = template or ""
    for pattern, replacement in _PLACEHOLDER_ALIASES:
        source = pattern.sub(replacement, source)
    try:
        rendered = _template_env.from_string(source).render(
            char=ctx.reply_as.name,
            user=ctx.sender_name,
            personality=ctx.reply_as.persona,
            scenario=ctx.reply_as.scenario,
        )
    except TemplateError as exc:
        raise PromptTemplateError(f"Could not render prompt template: {exc}") from exc
    return rendered.strip()


@dataclass
class HistoryEntry:
    role: Role
    text: str
    is_insert: bool = False


@dataclass
class HistoryWindow:
    entries: list[HistoryEntry]  # chronological
    cost: int
    included_lines: int


def walk_history(
    ctx: ConversationContext,
    history_budget: int,
    line_cost: Callable[[Role, str], int],
) -> HistoryWindow:
    """Collect the newest lines that fit in ``history_budget``.

    A line is excluded once ``running + cost >= history_budget``, along with every
    older line. An insert keyed ``d`` ends up with exactly ``d`` included lines below
    it. Inserts whose anchor is never included are flushed when the walk reaches the
    example dialogue, or once at the end, so each insert appears exactly once.
    """
    pending = dict(ctx.inserts)
    collected: list[HistoryEntry] = []  # newest first
    running = 0
    included = 0

    def flush_pending():
        for key in sorted(pending):
            collected.append(HistoryEntry(Role.SYSTEM, pending[key], is_insert=True))
        pending.clear()

    for distance, line in enumerate(reversed(ctx.lines)):
        role = classify_line(line, ctx)
        if role is Role.EXAMPLE:
            flush_pending()

        cost = line_cost(role, line)
        if running + cost >= history_budget:
            break

        insert = pending.pop(distance, None)
        if insert is not None:
            collected.append(HistoryEntry(Role.SYSTEM, insert, is_insert=True))
        collected.append(HistoryEntry(role, line))
        running += cost
        included += 1

    flush_pending()
    collected.reverse()
    return HistoryWindow(entries=collected, cost=running, included_lines=included)


@dataclass
class _FixedParts:
    preamble: str
    ujb: str
    prefill: str
    reply_label: str
    continue_directive: str
    inserts: list[str]


class PromptBudgetBuilder:
    """Builds text prompts or chat turns for one request."""

    def __init__(self, counter: TokenCounter):
        self.count = counter

    def _fixed_parts(self, request: GenerationRequest) -> _FixedParts:
        ctx, gen = request.context, request.settings
        ujb = render_template(gen.ujb, ctx) if gen.ujb else ""
        directive = ""
        if request.kind is RequestKind.CONTINUE:
            directive = f"Continue {ctx.reply_as.name}'s reply."
        return _FixedParts(
            preamble=render_template(gen.gaslight, ctx),
            ujb=ujb,
            prefill=gen.prefill + "\n" if gen.prefill else "",
            reply_label=f"{ctx.reply_as.name}:" if gen.append_reply_name else "",
            continue_directive=directive,
            inserts=[ctx.inserts[key] for key in sorted(ctx.inserts)],
        )

    def _check_overhead(self, pieces: list[str], budget: int) -> int:
        overhead = sum(self.count(piece) for piece in pieces if piece)
        if overhead >= budget:
            logger.warning("Fixed prompt content (%d tokens) exceeds budget of %d", overhead, budget)
            raise BudgetExceeded(overhead, budget)
        return overhead

    def build_text(self, request: GenerationRequest) -> AssembledPrompt:
        ctx, gen = request.context, request.settings
        budget = gen.max_context_length - gen.max_tokens

        if request.kind is RequestKind.PLAIN:
            text = f"{MANDATORY_PREFIX}{request.prompt}\n\nAssistant:"
            return AssembledPrompt(text=text, fixed_cost=self.count(text), budget=budget)

        parts = self._fixed_parts(request)
        head = MANDATORY_PREFIX + format_line(Role.SYSTEM, parts.preamble)
        ujb = format_line(Role.SYSTEM, parts.ujb) if parts.ujb else ""
        directive = format_line(Role.SYSTEM, parts.continue_directive) if parts.continue_directive else ""
        inserts = [format_line(Role.SYSTEM, text) for text in parts.inserts]

        overhead = self._check_overhead(
            [head, parts.prefill, ujb, parts.reply_label, directive, ASSISTANT_OPENER, *inserts],
            budget,
        )
        window = walk_history(
            ctx,
            budget - overhead,
            lambda role, line: self.count(format_line(role, line)),
        )
        history = "".join(format_line(entry.role, entry.text) for entry in window.entries)

        text = (
            head
            + history
            + ujb
            + directive
            + ASSISTANT_OPENER
            + parts.prefill
            + parts.reply_label
        )
        return AssembledPrompt(
            text=text,
            fixed_cost=overhead,
            history_cost=window.cost,
            budget=budget,
            included_lines=window.included_lines,
        )

    def build_chat(self, request: GenerationRequest) -> AssembledPrompt:
        """Build chat turns. The preamble is the leading system turn; callers
        normalize roles for providers without one."""
        ctx, gen = request.context, request.settings
        budget = gen.max_context_length - gen.max_tokens

        if request.kind is RequestKind.PLAIN:
            messages = [ChatMessage(role="user", content=request.prompt)]
            return AssembledPrompt(messages=messages, fixed_cost=self.count(request.prompt), budget=budget)

        parts = self._fixed_parts(request)
        tail = (parts.prefill + parts.reply_label).rstrip()
        # Turns after the preamble may be merged, so each pays for a separator.
        # The preamble moves to the system field and leaves a placeholder turn.
        turns = [parts.ujb, parts.continue_directive, tail, *parts.inserts]
        overhead = self._check_overhead(
            [parts.preamble, PLACEHOLDER, *(TURN_SEPARATOR + turn for turn in turns if turn)],
            budget,
        )
        window = walk_history(
            ctx,
            budget - overhead,
            lambda role, line: self.count(TURN_SEPARATOR + chat_content(role, line)),
        )

        messages = [ChatMessage(role="system", content=parts.preamble)]
        messages.extend(
            ChatMessage(role=CHAT_ROLES[entry.role], content=chat_content(entry.role, entry.text))
            for entry in window.entries
        )
        if parts.ujb:
            messages.append(ChatMessage(role="system", content=parts.ujb))
        if parts.continue_directive:
            messages.append(ChatMessage(role="user", content=parts.continue_directive))
        if tail:
            messages.append(ChatMessage(role="assistant", content=tail))

        return AssembledPrompt(
            messages=messages,
            fixed_cost=overhead,
            history_cost=window.cost,
            budget=budget,
            included_lines=window.included_lines,
        )
