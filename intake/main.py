from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.app import IntakeApp
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger(__name__)


async def _run(config: AppConfig) -> None:
    async with IntakeApp(config) as intake:
        if not config.fastapi.enabled:
            LOGGER.info("HTTP API disabled; running the session purge only")
            await asyncio.Event().wait()
            return
        server = uvicorn.Server(
            uvicorn.Config(
                app=create_api_app(intake),
                host=config.fastapi.host,
                port=config.fastapi.port,
                log_level=config.logging.level.lower(),
            )
        )
        await server.serve()


def main() -> None:
    root = Path(__file__).resolve().parent
    config_path = Path(os.getenv("INTAKE_CONFIG", root / "config" / "config.yaml"))
    config = load_config(config_path)
    configure_logging(config.logging)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
