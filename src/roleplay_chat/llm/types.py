"""Types for the generation adapter layer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class Role(str, Enum):
    """Role of a history line once classified."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    EXAMPLE = "example"


class RequestKind(str, Enum):
    CHAT = "chat"
    CONTINUE = "continue"
    PLAIN = "plain"
    RETRY = "retry"


DEFAULT_GASLIGHT = (
    "Enter roleplay mode. You will write {{char}}'s next reply in a dialogue between "
    "{{char}} and {{user}}. Do not decide what {{user}} says or does. "
    "Use Internet roleplay style, be creative and drive the plot forward.\n\n"
    "{{char}}'s Persona: {{personality}}\n\n"
    "Scenario: {{scenario}}"
)


@dataclass
class ChatMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


@dataclass
class GenerationSettings:
    """Per-request generation tunables."""
    model: Optional[str] = None  # Override default model
    temperature: float = 1.0
    top_p: float = 1.0
    top_k: int = 0
    max_tokens: int = 500
    max_context_length: int = 12000
    stream: bool = True
    stop_sequences: set[str] = field(default_factory=set)
    prefill: Optional[str] = None
    append_reply_name: bool = True
    gaslight: str = DEFAULT_GASLIGHT
    ujb: Optional[str] = None


@dataclass
class CharacterProfile:
    name: str
    persona: str = ""
    scenario: str = ""


@dataclass
class ConversationContext:
    """Conversation state handed to the prompt builder.

    ``lines`` is chronological (oldest first). ``inserts`` maps a distance from the
    bottom of the scrollback to auxiliary text, e.g. long-term memory.
    """
    reply_as: CharacterProfile
    sender: str
    lines: list[str] = field(default_factory=list)
    impersonate: Optional[CharacterProfile] = None
    characters: dict[str, CharacterProfile] = field(default_factory=dict)
    members: list[str] = field(default_factory=list)
    inserts: dict[int, str] = field(default_factory=dict)
    example_marker: Optional[str] = None

    @property
    def sender_name(self) -> str:
        return self.impersonate.name if self.impersonate else self.sender

    @property
    def sample_marker(self) -> str:
        if self.example_marker:
            return self.example_marker
        return f'How "{self.reply_as.name}" speaks:'

    def speaker_names(self) -> set[str]:
        """Names of everyone who may speak in the scrollback except the reply character."""
        names = {self.sender_name, *self.members, *self.characters}
        names.discard(self.reply_as.name)
        return {name for name in names if name}


@dataclass
class Credentials:
    """Per-user provider credentials. Decryption is the caller's job."""
    api_key: Optional[str] = None
    third_party_key: Optional[str] = None
    third_party_url: Optional[str] = None
    third_party_format: Optional[str] = None


@dataclass
class GenerationRequest:
    request_id: str
    context: ConversationContext
    settings: GenerationSettings = field(default_factory=GenerationSettings)
    credentials: Credentials = field(default_factory=Credentials)
    kind: RequestKind = RequestKind.CHAT
    user_id: str = ""
    is_third_party: bool = False
    prompt: str = ""  # Only used by plain requests


@dataclass
class AssembledPrompt:
    """Output of the prompt builder: a flat prompt or a list of turns."""
    text: Optional[str] = None
    messages: list[ChatMessage] = field(default_factory=list)
    system: str = ""
    fixed_cost: int = 0
    history_cost: int = 0
    budget: int = 0
    included_lines: int = 0

    @property
    def total_cost(self) -> int:
        return self.fixed_cost + self.history_cost


# Stream protocol


@dataclass(frozen=True)
class SSEFrame:
    """One server-sent event as read off the wire."""
    event: str = "message"
    data: str = ""
    error: Optional[str] = None  # set when the transport failed mid-stream


@dataclass(frozen=True)
class Token:
    text: str


@dataclass(frozen=True)
class SoftError:
    """Provider error after partial output. The stream ends but the text is kept."""
    message: str


@dataclass(frozen=True)
class HardError:
    """Provider error before any output. Nothing usable was produced."""
    message: str


@dataclass(frozen=True)
class Done:
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.metadata.get("completion", "")


StreamEvent = Union[Token, SoftError, HardError, Done]


@dataclass(frozen=True)
class CompletionResult:
    text: str
    stop_reason: Optional[str] = None
    provider_model: str = ""


# Outbound events, tagged with the originating request id


@dataclass(frozen=True)
class PartialEvent:
    request_id: str
    partial: str

    def to_dict(self) -> dict[str, Any]:
        return {"requestId": self.request_id, "partial": self.partial}


@dataclass(frozen=True)
class NotificationEvent:
    request_id: str
    user_id: str
    message: str
    level: str = "warn"

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "userId": self.user_id,
            "type": "notification",
            "level": self.level,
            "message": self.message,
        }


@dataclass(frozen=True)
class CompletionEvent:
    request_id: str
    result: CompletionResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "response": self.result.text,
            "stopReason": self.result.stop_reason,
            "model": self.result.provider_model,
        }


@dataclass(frozen=True)
class ErrorEvent:
    request_id: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"requestId": self.request_id, "error": self.error}


GenerationEvent = Union[PartialEvent, NotificationEvent, CompletionEvent, ErrorEvent]
