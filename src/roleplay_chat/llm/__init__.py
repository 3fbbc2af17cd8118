"""Generation adapter layer."""

from .base import BaseLLMClient
from .claude import ClaudeClient
from .errors import (
    BudgetExceeded,
    EmptyCompletion,
    GenerationError,
    MissingCredential,
    PromptTemplateError,
    ProviderError,
    TransportError,
)
from .types import (
    CharacterProfile,
    ChatMessage,
    CompletionResult,
    ConversationContext,
    Credentials,
    GenerationRequest,
    GenerationSettings,
    RequestKind,
    Role,
)

__all__ = [
    "BaseLLMClient",
    "ClaudeClient",
    "BudgetExceeded",
    "EmptyCompletion",
    "GenerationError",
    "MissingCredential",
    "PromptTemplateError",
    "ProviderError",
    "TransportError",
    "CharacterProfile",
    "ChatMessage",
    "CompletionResult",
    "ConversationContext",
    "Credentials",
    "GenerationRequest",
    "GenerationSettings",
    "RequestKind",
    "Role",
]
