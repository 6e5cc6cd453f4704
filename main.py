#!/usr/bin/env python3
"""
authgate -- credential and session service.

Usage:
  python main.py

Environment variables (see core/config.py for the full list):
  API_HOST / API_PORT   Bind address (default 0.0.0.0:4000).
  JWT_SECRET            Access-token signing secret (required unless DEBUG=true).
  COOKIE_SECRET         OAuth state cookie secret (required unless DEBUG=true).
  DATABASE_URL          SQLAlchemy URL (default sqlite:///./authgate.db).
"""

import uvicorn

from core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "asgi:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
