from __future__ import annotations

import logging

from chatcore.core.security import redact_secrets

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


class RedactionFilter(logging.Filter):
    """Log filter that redacts tokens and keys before output."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Format first so %d and friends still see their original argument types.
        record.msg = redact_secrets(record.getMessage())
        record.args = None
        return True


def setup_logging(level: str) -> None:
    """Configure application logging with secret redaction.

    The filter sits on the root handlers so records propagated from module
    loggers are redacted too. Safe to call repeatedly.
    """

    resolved = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in root.handlers:
        if not any(isinstance(item, RedactionFilter) for item in handler.filters):
            handler.addFilter(RedactionFilter())
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
