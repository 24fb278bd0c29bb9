import logging
import os
from typing import Optional

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("uvicorn.access", "multipart")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging defaults for the application.

    Token values, password material and TOTP secrets are never passed to
    loggers; log user ids instead.
    """
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("authgate").setLevel(resolved)
    if resolved != "DEBUG":
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
