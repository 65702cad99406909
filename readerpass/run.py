"""
Server runner for ReaderPass.

    readerpass            # installed console script
    python -m readerpass.run
"""
import logging

import uvicorn

from readerpass.core.config import settings

logger = logging.getLogger("readerpass")


def main() -> None:
    logger.info("Serving ReaderPass on %s:%s", settings.HOST, settings.PORT)
    uvicorn.run(
        "readerpass.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.ENV == "development",
    )


if __name__ == "__main__":
    main()
