"""Claude client end to end against a mocked transport."""

import json

import httpx
import pytest

from roleplay_chat.llm.claude import CHAT_URL, TEXT_URL, ClaudeClient
from roleplay_chat.llm.types import (
    CompletionEvent,
    Credentials,
    ErrorEvent,
    NotificationEvent,
    PartialEvent,
    RequestKind,
)

from tests.helpers import make_request, word_count

pytestmark = pytest.mark.asyncio

CHAT_MODEL = "claude-3-haiku-20240307"
TEXT_MODEL = "claude-2.1"
LINES = ["Sam: Hi Aria.", "Aria: Hello, Sam.", "System: An alarm sounds.", "Sam: What is that?"]


def sse(*events) -> bytes:
    chunks = []
    for event, data in events:
        chunks.append(f"event: {event}\ndata: {json.dumps({'type': event, **data})}\n\n")
    return "".join(chunks).encode()


def text_delta(text: str):
    return ("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": text}})


class Recorder:
    """Mock transport handler that remembers every request."""

    def __init__(self, respond):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def payload(self) -> dict:
        return json.loads(self.requests[-1].content)


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks, fail_with: Exception | None = None):
        self.chunks = chunks
        self.fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.closed = True


def make_client(recorder: Recorder) -> ClaudeClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return ClaudeClient(http_client, model=CHAT_MODEL, counter=word_count)


async def run(client: ClaudeClient, request) -> list:
    return [event async for event in client.generate(request)]


async def test_streaming_chat_request():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse(
                ("message_start", {"message": {"id": "msg_1", "model": CHAT_MODEL}}),
                ("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}}),
                ("ping", {}),
                text_delta("Hello"),
                text_delta(" there"),
                text_delta("!"),
                ("content_block_stop", {"index": 0}),
                ("message_delta", {"delta": {"stop_reason": "end_turn", "stop_sequence": None}}),
                ("message_stop", {}),
            ),
        )
    )
    events = await run(make_client(recorder), make_request(LINES, temperature=1.7, top_p=-0.2, top_k=900))

    assert [e.partial for e in events if isinstance(e, PartialEvent)] == ["Hello", "Hello there", "Hello there!"]
    final = events[-1]
    assert isinstance(final, CompletionEvent)
    assert final.result.text == "Hello there!"
    assert final.result.stop_reason == "end_turn"
    assert final.result.provider_model == CHAT_MODEL
    assert final.to_dict()["requestId"] == "req-1"

    sent = recorder.requests[0]
    assert str(sent.url) == CHAT_URL
    assert sent.headers["x-api-key"] == "sk-test"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert sent.headers["accept"] == "text/event-stream"

    payload = recorder.payload
    assert payload["stream"] is True
    assert payload["temperature"] == 1
    assert payload["top_p"] == 0
    assert payload["top_k"] == 500
    assert "\n\nHuman:" in payload["stop_sequences"]
    assert payload["system"].startswith("Enter roleplay mode.")
    roles = [m["role"] for m in payload["messages"]]
    assert roles[0] == "user"
    assert all(a != b for a, b in zip(roles, roles[1:]))
    assert payload["messages"][-1] == {"role": "assistant", "content": "Aria:"}


async def test_error_after_tokens_keeps_partial_and_notifies():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            content=sse(
                text_delta("Hello"),
                ("error", {"error": {"type": "overloaded_error", "message": "Overloaded"}}),
                text_delta(" lost"),
            ),
        )
    )
    events = await run(make_client(recorder), make_request(LINES))

    assert events[0] == PartialEvent("req-1", "Hello")
    notifications = [e for e in events if isinstance(e, NotificationEvent)]
    assert len(notifications) == 1
    assert notifications[0].user_id == "user-1"
    assert notifications[0].to_dict()["level"] == "warn"
    assert "Overloaded" in notifications[0].message
    assert isinstance(events[-1], CompletionEvent)
    assert events[-1].result.text == "Hello"


async def test_error_before_tokens_is_terminal():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            content=sse(("error", {"error": {"type": "overloaded_error", "message": "Overloaded"}})),
        )
    )
    events = await run(make_client(recorder), make_request(LINES))

    assert events == [ErrorEvent("req-1", "Anthropic interrupted the response: Overloaded")]


async def test_transport_failure_mid_stream_is_soft():
    stream = TrackingStream([sse(text_delta("Partial reply"))], fail_with=httpx.ReadTimeout("timed out"))
    recorder = Recorder(lambda request: httpx.Response(200, stream=stream))
    events = await run(make_client(recorder), make_request(LINES))

    assert isinstance(events[1], NotificationEvent)
    assert "timed out" in events[1].message
    assert events[-1].result.text == "Partial reply"
    assert stream.closed


async def test_transport_failure_before_tokens_is_hard():
    stream = TrackingStream([], fail_with=httpx.ReadTimeout("timed out"))
    recorder = Recorder(lambda request: httpx.Response(200, stream=stream))
    events = await run(make_client(recorder), make_request(LINES))

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert "timed out" in events[0].error


async def test_stream_error_status():
    recorder = Recorder(
        lambda request: httpx.Response(401, json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})
    )
    events = await run(make_client(recorder), make_request(LINES))

    assert events == [ErrorEvent("req-1", "Claude streaming request failed: invalid x-api-key")]


async def test_abandoning_the_stream_releases_the_connection():
    stream = TrackingStream([sse(text_delta("One")), sse(text_delta(" two")), sse(text_delta(" three"))])
    recorder = Recorder(lambda request: httpx.Response(200, stream=stream))
    events = make_client(recorder).generate(make_request(LINES))

    first = await events.__anext__()
    assert first == PartialEvent("req-1", "One")
    await events.aclose()

    assert stream.closed


async def test_single_shot_text_completion():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            json={"completion": " Aria: The alarm means we're docking.\nSam: Oh.", "stop_reason": "stop_sequence", "model": TEXT_MODEL},
        )
    )
    events = await run(make_client(recorder), make_request(LINES, model=TEXT_MODEL, stream=False))

    assert len(events) == 1
    assert events[0].result.text == "The alarm means we're docking."
    assert events[0].result.stop_reason == "stop_sequence"
    assert str(recorder.requests[0].url) == TEXT_URL

    payload = recorder.payload
    assert payload["stream"] is False
    assert payload["max_tokens_to_sample"] == 500
    assert payload["prompt"].startswith("\n\nHuman: ")
    assert payload["prompt"].endswith("\n\nAssistant: Aria:")
    assert "top_k" not in payload


async def test_single_shot_chat_completion_content():
    recorder = Recorder(
        lambda request: httpx.Response(
            200,
            json={"content": [{"type": "text", "text": "Docking alarm."}], "stop_reason": "end_turn", "model": CHAT_MODEL},
        )
    )
    events = await run(make_client(recorder), make_request(LINES, stream=False))
    assert events[-1].result.text == "Docking alarm."


async def test_plain_requests_never_stream():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "A summary."}))
    request = make_request(LINES, kind=RequestKind.PLAIN, model=TEXT_MODEL, stream=True)
    request.prompt = "Summarize the scene."
    events = await run(make_client(recorder), request)

    assert events[-1].result.text == "A summary."
    assert recorder.payload["stream"] is False
    assert recorder.payload["prompt"] == "\n\nHuman: Summarize the scene.\n\nAssistant:"


async def test_single_shot_error_status():
    recorder = Recorder(lambda request: httpx.Response(529, json={"error": {"message": "Overloaded"}}))
    events = await run(make_client(recorder), make_request(LINES, stream=False))

    assert events == [ErrorEvent("req-1", "Claude request failed: Overloaded")]


async def test_empty_and_sanitized_empty_replies_are_distinct():
    empty = Recorder(lambda request: httpx.Response(200, json={"completion": ""}))
    events = await run(make_client(empty), make_request(LINES, model=TEXT_MODEL, stream=False))
    assert "Received empty response" in events[-1].error

    echoed = Recorder(lambda request: httpx.Response(200, json={"completion": "\nSam: I answer for Sam"}))
    events = await run(make_client(echoed), make_request(LINES, model=TEXT_MODEL, stream=False))
    assert isinstance(events[-1], ErrorEvent)
    assert "empty after cleanup" in events[-1].error


async def test_missing_key_fails_before_sending():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "unused"}))
    events = await run(make_client(recorder), make_request(LINES, credentials=Credentials()))

    assert len(events) == 1
    assert "API key not set" in events[0].error
    assert recorder.requests == []


async def test_third_party_endpoint_takes_precedence():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "Proxy reply."}))
    request = make_request(
        LINES,
        model=TEXT_MODEL,
        stream=False,
        credentials=Credentials(
            api_key="sk-user",
            third_party_key="proxy-key",
            third_party_url="https://proxy.example/v1/complete",
            third_party_format="claude",
        ),
    )
    request.is_third_party = True
    events = await run(make_client(recorder), request)

    assert events[-1].result.text == "Proxy reply."
    sent = recorder.requests[0]
    assert str(sent.url) == "https://proxy.example/v1/complete"
    assert sent.headers["x-api-key"] == "proxy-key"


async def test_overridden_endpoint_needs_no_key():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "Local reply."}))
    request = make_request(
        LINES,
        model=TEXT_MODEL,
        stream=False,
        credentials=Credentials(third_party_url="http://localhost:9000/v1/complete", third_party_format="claude"),
    )
    request.is_third_party = True
    events = await run(make_client(recorder), request)

    assert events[-1].result.text == "Local reply."
    assert "x-api-key" not in recorder.requests[0].headers


async def test_budget_failure_is_reported_as_error():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "unused"}))
    request = make_request(LINES, gaslight="word " * 200, max_context_length=150, max_tokens=100)
    events = await run(make_client(recorder), request)

    assert len(events) == 1
    assert "Prompt is too large" in events[0].error
    assert recorder.requests == []


@pytest.mark.parametrize("stream", [True, False])
async def test_malformed_endpoint_url_is_reported_as_error(stream):
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "unused"}))
    request = make_request(
        LINES,
        model=TEXT_MODEL,
        stream=stream,
        credentials=Credentials(third_party_url="http://exa mple.com:xx/", third_party_format="claude"),
    )
    request.is_third_party = True
    events = await run(make_client(recorder), request)

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error.startswith("Claude")
    assert recorder.requests == []


async def test_complete_returns_error_for_malformed_endpoint_url():
    recorder = Recorder(lambda request: httpx.Response(200, json={"completion": "unused"}))
    request = make_request(
        LINES,
        credentials=Credentials(third_party_url="http://exa mple.com:xx/", third_party_format="claude"),
    )
    request.is_third_party = True
    event = await make_client(recorder).complete(request)

    assert isinstance(event, ErrorEvent)
    assert event.request_id == "req-1"
