from __future__ import annotations

import uvicorn

from fashion_ai.config import Settings
from fashion_ai.logging import init_logging


def main() -> None:  # pragma: no cover - process entrypoint
    init_logging()
    settings = Settings.load()
    uvicorn.run(
        "fashion_ai.api.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.app.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
