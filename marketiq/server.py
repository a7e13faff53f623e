"""Console entrypoint that boots uvicorn with the port taken from the environment.

Hosting providers that skip shell expansion would otherwise hand uvicorn a
literal ``"$PORT"``; malformed values fall back to the default with a warning.
"""

from __future__ import annotations

import logging
import os

import uvicorn

from .config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8000


def resolve_port(raw: str | None, default: int = DEFAULT_PORT) -> int:
    if not raw:
        return default
    try:
        port = int(raw)
    except ValueError:
        logger.warning("Invalid PORT=%r; falling back to %d", raw, default)
        return default
    if not 0 < port < 65536:
        logger.warning("Out of range PORT=%r; falling back to %d", raw, default)
        return default
    return port


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "marketiq.api:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=resolve_port(os.environ.get("PORT")),
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
