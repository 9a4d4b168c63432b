"""Run the HTTP and real-time protocol surface with uvicorn."""

from __future__ import annotations

import uvicorn

from brain_integration.api.main import create_app
from brain_integration.config import BrainSettings
from brain_integration.logging_config import setup_logging


def main() -> None:
    settings = BrainSettings()
    setup_logging(settings.logging)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.protocol.host,
        port=settings.protocol.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
