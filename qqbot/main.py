"""
Entry point for the ``qqbot`` command and logging setup shared by every host.

``configure_logging`` must run before the first log line is emitted so that
client secrets and access tokens never reach the console in plaintext.
"""

from __future__ import annotations

import logging
import os

import structlog

_SECRET_KEYS = frozenset(
    {"client_secret", "clientSecret", "token", "access_token", "secret", "content"}
)
_MASK = "***"


def _mask(value: object) -> str:
    text = str(value)
    if len(text) <= 8:
        return _MASK
    return f"{text[:4]}{_MASK}"


def _redact_secret_fields(logger, method_name, event_dict):
    """Structlog processor that masks secret-bearing fields."""
    for key in _SECRET_KEYS:
        if key in event_dict and event_dict[key]:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


_logging_configured = False


def configure_logging(level: str | int | None = None) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; only the first call has any effect.  The
    level defaults to ``QQBOT_LOG_LEVEL`` or WARNING.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    if level is None:
        level = os.environ.get("QQBOT_LOG_LEVEL", "WARNING")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secret_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    from qqbot.cli import cli

    cli()


if __name__ == "__main__":
    main()
