"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import httpx

from .config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%H:%M:%S",
)
from fastapi import FastAPI

from .llm import ClaudeClient
from .routes import chat


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - owns the pooled provider HTTP client."""
    print(f"[startup] Claude chat URL: {settings.claude_chat_url}")
    print(f"[startup] Claude text URL: {settings.claude_text_url}")
    print(f"[startup] Default model: {settings.claude_model}")

    timeout = httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout)
    async with httpx.AsyncClient(timeout=timeout) as http_client:
        chat.set_llm_client(
            ClaudeClient(
                http_client,
                model=settings.claude_model,
                chat_url=settings.claude_chat_url,
                text_url=settings.claude_text_url,
                api_version=settings.anthropic_version,
            )
        )
        yield

    print("Provider HTTP client closed")


app = FastAPI(lifespan=lifespan)

app.include_router(chat.router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "model": settings.claude_model,
        "chatUrl": settings.claude_chat_url,
        "textUrl": settings.claude_text_url,
    }
