"""Console logging for Plinth.

Modules log through ``logging.getLogger(__name__)``. The CLI calls
:func:`configure_logging` once at start-up to route records through
``click.echo`` with colours; verbose mode adds one line per build action.
"""

from __future__ import annotations

import logging

import click

__all__ = ["configure_logging", "ClickHandler"]

_LEVEL_STYLES = {
    logging.DEBUG: {"dim": True},
    logging.WARNING: {"fg": "yellow"},
    logging.ERROR: {"fg": "red", "bold": True},
    logging.CRITICAL: {"fg": "red", "bold": True},
}


class ClickHandler(logging.Handler):
    """Logging handler that writes styled records with ``click.echo``.

    Warnings and errors go to stderr, everything else to stdout.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            style = _LEVEL_STYLES.get(record.levelno, {})
            if record.levelno >= logging.WARNING:
                message = f"{record.levelname.capitalize()}: {message}"
            click.echo(
                click.style(message, **style),
                err=record.levelno >= logging.WARNING,
            )
        except Exception:  # pragma: no cover - logging must never raise
            self.handleError(record)


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Install the console handler on the ``plinth`` logger.

    Calling it again replaces the previous handler, so repeated CLI
    invocations in one process (tests) do not duplicate output.

    Args:
        verbose: Log build actions at DEBUG level when True.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("plinth")
    for handler in list(logger.handlers):
        if isinstance(handler, ClickHandler):
            logger.removeHandler(handler)
    handler = ClickHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger
