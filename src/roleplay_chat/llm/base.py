"""Abstract base class for generation clients."""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from .errors import GenerationError
from .types import CompletionEvent, ErrorEvent, GenerationEvent, GenerationRequest


class BaseLLMClient(ABC):
    """Abstract interface for LLM backends."""

    @abstractmethod
    def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        """Generate a reply for a conversation.

        Args:
            request: Conversation state, settings and credentials for one request.

        Yields:
            Zero or more partial/notification events, then exactly one
            ``CompletionEvent`` or ``ErrorEvent``.
        """
        ...

    async def complete(self, request: GenerationRequest) -> CompletionEvent | ErrorEvent:
        """Run a request to the end and return only its terminal event."""
        terminal: CompletionEvent | ErrorEvent | None = None
        async for event in self.generate(request):
            if isinstance(event, (CompletionEvent, ErrorEvent)):
                terminal = event
        if terminal is None:
            raise GenerationError(f"Request {request.request_id} ended without a terminal event")
        return terminal
