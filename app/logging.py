"""
Logging configuration.
Uvicorn and edupay logger levels. Per-endpoint delivery failures log at warning,
unexpected ones with log.exception (app/services/fanout.py).
"""
import logging
import sys

# HTTP client libraries used for push delivery log every request at INFO/DEBUG
_CHATTY_LOGGERS = ("urllib3", "httpx", "httpcore")


def setup_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
    http_client_level: int | str = logging.WARNING,
) -> None:
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=format_string,
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    # edupay, edupay.push, edupay.agent, edupay.subscriptions
    logging.getLogger("edupay").setLevel(level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(http_client_level)
