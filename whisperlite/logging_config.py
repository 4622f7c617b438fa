"""
Logging configuration for the Whisperlite server.

- Console: timestamped lines at the configured level.
- Vendor client loggers (httpx, websockets) are held at WARNING.
"""
import logging
import sys

_NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "google", "urllib3")


def setup_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root = logging.getLogger()
    root.setLevel(resolved)
    for h in root.handlers[:]:
        root.removeHandler(h)
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("logging_ready level=%s", logging.getLevelName(resolved))
