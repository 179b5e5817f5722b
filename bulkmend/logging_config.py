import logging
from typing import Optional

from bulkmend.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the API and worker processes."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO; poll loops make that noisy.
    logging.getLogger("httpx").setLevel(logging.WARNING)
