from __future__ import annotations

import logging
import os

import uvicorn


def configure_logging() -> None:
    level = os.getenv("PLANNERSYNC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    host = os.getenv("PLANNERSYNC_HOST", "127.0.0.1")
    port = int(os.getenv("PLANNERSYNC_PORT", "8080"))
    uvicorn.run("plannersync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
