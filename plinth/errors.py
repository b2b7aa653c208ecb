"""Error hierarchy for Plinth.

All Plinth-specific errors inherit from PlinthError so callers (the CLI and
the watch driver) can catch them in one place.
"""

from __future__ import annotations

from pathlib import Path


class PlinthError(Exception):
    """Base error for all Plinth operations."""


class ConfigError(PlinthError):
    """Invalid or missing configuration."""


class TemplateNotFoundError(ConfigError):
    """No page template governs a content file.

    Attributes:
        path: Input-relative path of the file that needed a template.
        expected: Where the nearest template was expected to live.
    """

    def __init__(self, path: str, expected: str):
        self.path = path
        self.expected = expected
        super().__init__(
            f"No template found for {path}: expected {expected} "
            "in its directory or one of its parents"
        )


class CompileError(PlinthError):
    """An external compiler rejected its input."""


class BuildError(PlinthError):
    """Error during site build with file context.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


def format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    if isinstance(exc, PlinthError):
        return str(exc)
    error_type = type(exc).__name__
    error_msg = str(exc)

    if error_type == "UnicodeDecodeError":
        return f"Not a UTF-8 text file: {error_msg}"
    if error_type == "TypeError":
        return f"Type error: {error_msg}"
    if error_type == "AttributeError":
        return f"Attribute error: {error_msg}"

    return f"{error_type}: {error_msg}"
