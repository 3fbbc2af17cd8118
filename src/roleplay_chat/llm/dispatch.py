"""Send requests to the provider, single-shot or streaming."""

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

import httpx

from .errors import MissingCredential, TransportError
from .types import Credentials, SSEFrame

logger = logging.getLogger(__name__)

# InvalidURL does not subclass HTTPError.
_SEND_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


@dataclass
class Endpoint:
    url: str
    api_key: Optional[str] = None
    changed: bool = False  # True when a third-party URL replaced the provider's


async def iter_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[SSEFrame]:
    """Group ``event:`` / ``data:`` lines into frames, one per blank line."""
    event: Optional[str] = None
    data: list[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if event is not None or data:
                yield SSEFrame(event=event or "message", data="\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if event is not None or data:
        yield SSEFrame(event=event or "message", data="\n".join(data))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return response.reason_phrase or f"HTTP {response.status_code}"


class RequestDispatcher:
    """Frames the transport for one provider. Payload contents are not interpreted here."""

    def __init__(self, client: httpx.AsyncClient, chat_url: str, text_url: str, name: str = "Claude"):
        self._client = client
        self.chat_url = chat_url
        self.text_url = text_url
        self.name = name

    def resolve_endpoint(
        self,
        credentials: Credentials,
        use_chat: bool,
        is_third_party: bool = False,
        third_party_format: str = "claude",
    ) -> Endpoint:
        """Pick the URL and key for a request.

        A third-party URL and key take precedence over the user's own key. Raises
        ``MissingCredential`` when there is no key and the URL was not overridden.
        """
        changed = bool(
            is_third_party
            and credentials.third_party_format == third_party_format
            and credentials.third_party_url
        )
        url = credentials.third_party_url if changed else (self.chat_url if use_chat else self.text_url)

        if is_third_party:
            api_key = credentials.third_party_key if changed else None
            has_key = bool(credentials.third_party_key)
        else:
            api_key = credentials.api_key
            has_key = bool(credentials.api_key)

        if not has_key and not changed:
            raise MissingCredential(f"{self.name} request failed: {self.name} API key not set. Check your settings.")
        return Endpoint(url=url, api_key=api_key or None, changed=changed)

    async def send(self, endpoint: Endpoint, payload: dict, headers: dict[str, str]) -> dict:
        try:
            response = await self._client.post(endpoint.url, json=payload, headers=headers)
        except _SEND_ERRORS as exc:
            logger.error("%s request failed to send: %s", self.name, exc)
            raise TransportError(f"{self.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("%s request failed (%d): %s", self.name, response.status_code, response.text[:500])
            raise TransportError(
                f"{self.name} request failed: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{self.name} request failed: invalid JSON response") from exc

    async def stream(self, endpoint: Endpoint, payload: dict, headers: dict[str, str]) -> AsyncIterator[SSEFrame]:
        """Yield SSE frames until the body ends.

        The connection is released when the body ends, on error, and when the
        consumer stops early and closes this generator.
        """
        headers = {**headers, "accept": "text/event-stream"}
        try:
            async with self._client.stream("POST", endpoint.url, content=json.dumps(payload), headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    logger.error("%s stream failed (%d): %s", self.name, response.status_code, response.text[:500])
                    raise TransportError(
                        f"{self.name} streaming request failed: {_error_message(response)}",
                        status_code=response.status_code,
                    )
                try:
                    async for frame in iter_sse_frames(response.aiter_lines()):
                        yield frame
                except httpx.HTTPError as exc:
                    # The normalizer decides whether this loses the whole response.
                    logger.error("%s SSE stream failed: %s", self.name, exc)
                    yield SSEFrame(event="error", error=str(exc) or type(exc).__name__)
        except _SEND_ERRORS as exc:
            logger.error("%s streaming request failed to send: %s", self.name, exc)
            raise TransportError(f"{self.name} streaming request failed: {exc}") from exc
