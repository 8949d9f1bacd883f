"""Entry point for the bidding service.

Usage::

    CONFIG_PATH=config.yaml python -m bidding_service
"""

from __future__ import annotations

import uvicorn

from bidding_service.app import create_app
from bidding_service.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    main()
