"""Exceptions raised by the generation pipeline.

Every one of these is terminal for a request. The provider client turns them into a
single ``ErrorEvent``; nothing here is retried automatically.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for terminal generation failures."""


class MissingCredential(GenerationError):
    """No API key is configured and the endpoint has not been overridden."""


class BudgetExceeded(GenerationError):
    """The fixed prompt content alone does not fit in the context budget."""

    def __init__(self, overhead: int, budget: int):
        self.overhead = overhead
        self.budget = budget
        super().__init__(
            f"Prompt is too large: fixed content needs {overhead} tokens "
            f"but only {budget} are available. Reduce the preamble or increase the context size."
        )


class PromptTemplateError(GenerationError):
    """The preamble or journal template could not be rendered."""


class TransportError(GenerationError):
    """Network failure or non-success status from the provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderError(GenerationError):
    """The provider reported an error before producing any output."""


class EmptyCompletion(GenerationError):
    """The completion was non-empty but nothing was left after sanitizing."""
