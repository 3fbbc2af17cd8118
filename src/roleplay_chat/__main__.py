"""Entry point for `python -m roleplay_chat`."""

import uvicorn

from .config import settings


def main():
    uvicorn.run(
        "roleplay_chat.app:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
