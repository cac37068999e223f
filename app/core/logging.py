import logging
import os
import sys


def setup_logging():
    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    )
    # httpx logs every provider request at INFO; keep billing logs readable
    logging.getLogger("httpx").setLevel(logging.WARNING)
