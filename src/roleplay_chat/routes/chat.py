"""Generation endpoints."""

import json
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..llm import (
    BaseLLMClient,
    CharacterProfile,
    ConversationContext,
    Credentials,
    GenerationRequest,
    GenerationSettings,
    RequestKind,
)
from ..llm.types import CompletionEvent, DEFAULT_GASLIGHT

router = APIRouter(prefix="/chat", tags=["chat"])


def get_llm_client() -> BaseLLMClient:
    """Get the generation client. Set at app startup."""
    return _llm_client


_llm_client: BaseLLMClient = None  # type: ignore


def set_llm_client(client: BaseLLMClient):
    global _llm_client
    _llm_client = client


class CharacterBody(BaseModel):
    name: str
    persona: str = ""
    scenario: str = ""

    def to_profile(self) -> CharacterProfile:
        return CharacterProfile(name=self.name, persona=self.persona, scenario=self.scenario)


class ContextBody(BaseModel):
    reply_as: CharacterBody
    sender: str
    lines: list[str] = Field(default_factory=list)
    impersonate: Optional[CharacterBody] = None
    characters: dict[str, CharacterBody] = Field(default_factory=dict)
    members: list[str] = Field(default_factory=list)
    inserts: dict[int, str] = Field(default_factory=dict)
    example_marker: Optional[str] = None


class SettingsBody(BaseModel):
    model: Optional[str] = None
    temperature: float = 1.0
    top_p: float = 1.0
    top_k: int = 0
    max_tokens: int = 500
    max_context_length: int = 12000
    stream: bool = True
    stop_sequences: list[str] = Field(default_factory=list)
    prefill: Optional[str] = None
    append_reply_name: bool = True
    gaslight: str = DEFAULT_GASLIGHT
    ujb: Optional[str] = None


class CredentialsBody(BaseModel):
    api_key: Optional[str] = None
    third_party_key: Optional[str] = None
    third_party_url: Optional[str] = None
    third_party_format: Optional[str] = None


class GenerateBody(BaseModel):
    request_id: str
    kind: RequestKind = RequestKind.CHAT
    user_id: str = ""
    is_third_party: bool = False
    prompt: str = ""
    context: ContextBody
    settings: SettingsBody = Field(default_factory=SettingsBody)
    credentials: CredentialsBody = Field(default_factory=CredentialsBody)

    def to_request(self) -> GenerationRequest:
        ctx = self.context
        settings = self.settings.model_dump()
        settings["stop_sequences"] = set(settings["stop_sequences"])
        return GenerationRequest(
            request_id=self.request_id,
            kind=self.kind,
            user_id=self.user_id,
            is_third_party=self.is_third_party,
            prompt=self.prompt,
            context=ConversationContext(
                reply_as=ctx.reply_as.to_profile(),
                sender=ctx.sender,
                lines=list(ctx.lines),
                impersonate=ctx.impersonate.to_profile() if ctx.impersonate else None,
                characters={name: body.to_profile() for name, body in ctx.characters.items()},
                members=list(ctx.members),
                inserts=dict(ctx.inserts),
                example_marker=ctx.example_marker,
            ),
            settings=GenerationSettings(**settings),
            credentials=Credentials(**self.credentials.model_dump()),
        )


@router.post("/generate")
async def generate_endpoint(body: GenerateBody):
    """Stream generation events as newline-delimited JSON.

    Partials carry the cumulative cleaned text. The last line is either the
    final response or an error; soft interruptions add one notification line
    addressed to the requesting user.
    """
    client = get_llm_client()
    request = body.to_request()

    async def events():
        async for event in client.generate(request):
            yield json.dumps(event.to_dict()) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@router.post("/complete")
async def complete_endpoint(body: GenerateBody):
    """Run a generation to the end and return only the terminal event."""
    client = get_llm_client()
    event = await client.complete(body.to_request())
    status_code = 200 if isinstance(event, CompletionEvent) else 502
    return JSONResponse(status_code=status_code, content=event.to_dict())
