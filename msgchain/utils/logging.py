import logging
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    resolved = getattr(logging, (level or "INFO").upper(), logging.INFO)
    if root.handlers:
        root.setLevel(resolved)
        return
    logging.basicConfig(level=resolved, format=_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
