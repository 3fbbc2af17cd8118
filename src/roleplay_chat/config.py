"""Application configuration."""

import os
from dataclasses import dataclass

import dotenv

dotenv.load_dotenv()


@dataclass
class AppSettings:
    """Main application settings with environment variable overrides."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # Claude
    claude_chat_url: str = "https://api.anthropic.com/v1/messages"
    claude_text_url: str = "https://api.anthropic.com/v1/complete"
    anthropic_version: str = "2023-06-01"
    claude_model: str = "claude-3-haiku-20240307"

    # Transport timeouts in seconds. Streams have no overall deadline.
    connect_timeout: float = 10.0
    read_timeout: float = 120.0

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            host=os.getenv("APP_HOST", cls.host),
            port=int(os.getenv("APP_PORT", cls.port)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            claude_chat_url=os.getenv("CLAUDE_CHAT_URL", cls.claude_chat_url),
            claude_text_url=os.getenv("CLAUDE_TEXT_URL", cls.claude_text_url),
            anthropic_version=os.getenv("ANTHROPIC_VERSION", cls.anthropic_version),
            claude_model=os.getenv("CLAUDE_MODEL", cls.claude_model),
            connect_timeout=float(os.getenv("CONNECT_TIMEOUT", cls.connect_timeout)),
            read_timeout=float(os.getenv("READ_TIMEOUT", cls.read_timeout)),
        )


settings = AppSettings.from_env()
