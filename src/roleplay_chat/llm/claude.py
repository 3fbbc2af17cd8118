"""Anthropic Claude client: chat (messages) and legacy text completion APIs."""

import logging
from contextlib import aclosing
from dataclasses import asdict
from typing import AsyncIterator, Optional

import httpx

from .base import BaseLLMClient
from .dispatch import RequestDispatcher
from .errors import EmptyCompletion, GenerationError, ProviderError
from .prompt import PromptBudgetBuilder
from .roles import normalize_roles
from .sanitize import SanitizeContext, sanitize
from .stream import get_decoder, normalize_stream
from .tokenize import TokenCounter, get_token_counter
from .types import (
    CompletionEvent,
    CompletionResult,
    Done,
    ErrorEvent,
    GenerationEvent,
    GenerationRequest,
    HardError,
    NotificationEvent,
    PartialEvent,
    RequestKind,
    SoftError,
    Token,
)

logger = logging.getLogger(__name__)

CHAT_URL = "https://api.anthropic.com/v1/messages"
TEXT_URL = "https://api.anthropic.com/v1/complete"
API_VERSION = "2023-06-01"

CLAUDE_CHAT_MODELS = {
    "claude-3-haiku-20240307",
    "claude-3-sonnet-20240229",
    "claude-3-opus-20240229",
    "claude-3-5-sonnet-20240620",
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
}

DEFAULT_STOPS = ("\n\nHuman:", "\n\nAssistant:")
TOP_K_RANGE = (0, 500)

# These kinds never stream, whatever the settings say.
NON_STREAMING_KINDS = {RequestKind.PLAIN}


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _content_text(body: dict) -> str:
    content = body.get("content") or []
    if content and isinstance(content[0], dict):
        return content[0].get("text") or ""
    return ""


class ClaudeClient(BaseLLMClient):
    """Turns a ``GenerationRequest`` into Claude requests and normalized events."""

    family = "claude"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        model: str = "claude-3-haiku-20240307",
        chat_url: str = CHAT_URL,
        text_url: str = TEXT_URL,
        api_version: str = API_VERSION,
        counter: Optional[TokenCounter] = None,
    ):
        self.model = model
        self.api_version = api_version
        self.dispatcher = RequestDispatcher(http_client, chat_url, text_url, name="Claude")
        self.builder = PromptBudgetBuilder(counter or get_token_counter(self.family))
        self.decode = get_decoder(self.family)

    def uses_chat(self, model: str) -> bool:
        return model in CLAUDE_CHAT_MODELS

    def build_payload(self, request: GenerationRequest) -> dict:
        gen = request.settings
        model = gen.model or self.model
        stops = set(DEFAULT_STOPS) | set(gen.stop_sequences)

        payload: dict = {
            "model": model,
            "temperature": _clamp(gen.temperature, 0, 1),
            "top_p": _clamp(gen.top_p, 0, 1),
            "stop_sequences": sorted(stops),
            "stream": gen.stream and request.kind not in NON_STREAMING_KINDS,
        }
        top_k = int(_clamp(gen.top_k, *TOP_K_RANGE))
        if top_k:
            payload["top_k"] = top_k

        if self.uses_chat(model):
            prompt = self.builder.build_chat(request)
            system, messages = normalize_roles(prompt.messages)
            payload["max_tokens"] = gen.max_tokens
            if system:
                payload["system"] = system
            payload["messages"] = [asdict(message) for message in messages]
        else:
            prompt = self.builder.build_text(request)
            payload["max_tokens_to_sample"] = gen.max_tokens
            payload["prompt"] = prompt.text

        logger.debug(
            "Prompt for %s uses %d/%d tokens (%d history lines)",
            request.request_id,
            prompt.total_cost,
            prompt.budget,
            prompt.included_lines,
        )
        return payload

    async def generate(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        try:
            async with aclosing(self._generate(request)) as events:
                async for event in events:
                    yield event
        except GenerationError as exc:
            logger.warning("Request %s failed: %s", request.request_id, exc)
            yield ErrorEvent(request.request_id, str(exc))

    async def _generate(self, request: GenerationRequest) -> AsyncIterator[GenerationEvent]:
        model = request.settings.model or self.model
        endpoint = self.dispatcher.resolve_endpoint(
            request.credentials,
            use_chat=self.uses_chat(model),
            is_third_party=request.is_third_party,
        )
        payload = self.build_payload(request)

        headers = {"content-type": "application/json", "anthropic-version": self.api_version}
        if endpoint.api_key:
            headers["x-api-key"] = endpoint.api_key

        logger.debug("Claude payload: %s", {**payload, "prompt": None, "messages": None})
        if payload.get("prompt"):
            logger.debug("Prompt:\n%s", payload["prompt"])

        clean = SanitizeContext.for_request(
            request.context,
            prompt=payload.get("prompt"),
            stop_sequences=set(payload["stop_sequences"]),
        )

        if payload["stream"]:
            acc = ""
            meta: dict = {}
            frames = self.dispatcher.stream(endpoint, payload, headers)
            async with aclosing(frames), aclosing(normalize_stream(frames, self.decode)) as events:
                async for event in events:
                    if isinstance(event, Token):
                        acc += event.text
                        partial = sanitize(acc, clean)
                        if partial:
                            yield PartialEvent(request.request_id, partial)
                    elif isinstance(event, SoftError):
                        yield NotificationEvent(request.request_id, request.user_id, event.message)
                    elif isinstance(event, HardError):
                        raise ProviderError(event.message)
                    elif isinstance(event, Done):
                        meta = event.metadata
            completion = meta.get("completion", "")
        else:
            meta = await self.dispatcher.send(endpoint, payload, headers)
            completion = meta.get("completion") or _content_text(meta)

        if not completion:
            logger.error("Claude request failed: Empty response %s", meta)
            raise ProviderError("Claude request failed: Received empty response. Try again.")

        text = sanitize(completion, clean)
        if not text:
            raise EmptyCompletion("Claude request failed: The reply was empty after cleanup. Try again.")

        yield CompletionEvent(
            request.request_id,
            CompletionResult(
                text=text,
                stop_reason=meta.get("stop_reason"),
                provider_model=meta.get("model") or model,
            ),
        )
