"""Utility functions for Plinth.

This module contains the small, pure helpers the build pipeline relies on:
staleness checks, content hashing for cache busting, and path handling.

Key functions:
    is_newer: Decide whether a source file is newer than its output.
    content_hash: Short deterministic hash used for cache-busting tokens.
    ensure_clean_dir: Ensure a directory exists and is empty.
    extension_of: Lowercase dotted extension of a path.
    has_extension: Check a path against a set of extensions.
    matches_any: Match a path against glob patterns.
    to_posix: Normalize a plugin-supplied path into an identity.
    parent_dirs: Walk a relative path's directories up to the root.
    is_partial: Check if a file is an underscore-prefixed partial.
"""

from __future__ import annotations

import fnmatch
import posixpath
import shutil
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"

STYLE_EXTENSIONS = frozenset({".scss", ".sass"})


def is_newer(source: Path, dest: Path) -> bool:
    """Check whether ``source`` was modified after ``dest``.

    A destination that does not exist (or cannot be stat'ed) always counts
    as older. A missing source is an error and propagates to the caller.

    Args:
        source: Input file.
        dest: Output file derived from ``source``.

    Returns:
        True if ``dest`` is absent or strictly older than ``source``.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
    """
    source_mtime = source.stat().st_mtime_ns
    try:
        dest_mtime = dest.stat().st_mtime_ns
    except OSError:
        return True
    return source_mtime > dest_mtime


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def content_hash(payload: bytes | str) -> str:
    """Hash a payload into a short base-36 token.

    DJB2 variant over the bytes, walking from the last byte to the first,
    kept to 32 bits. Fast and stable across runs; not collision resistant.

    Args:
        payload: Bytes to hash. Strings are UTF-8 encoded first.

    Returns:
        Lowercase base-36 rendering of the unsigned 32-bit hash.

    Examples:
        >>> content_hash(b"")
        '45h'
        >>> content_hash("a") == content_hash(b"a")
        True
    """
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    value = 5381
    for byte in reversed(data):
        value = ((value * 33) & 0xFFFFFFFF) ^ byte
    return _to_base36(value)


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path), ignore_errors=True)
        if path.exists():
            # Fallback for stubborn directories
            for item in path.rglob("*"):
                if item.is_file():
                    item.unlink()
            for item in sorted(
                [p for p in path.rglob("*") if p.is_dir()], reverse=True
            ):
                item.rmdir()
            path.rmdir()
    path.mkdir(parents=True, exist_ok=True)


def extension_of(path: str) -> str:
    """Return the lowercase dotted extension of a path, or ``""``."""
    return PurePosixPath(path).suffix.lower()


def has_extension(path: str, extensions: Iterable[str]) -> bool:
    """Check if a path ends with one of the given extensions.

    Args:
        path: File path or name.
        extensions: Dotted extensions such as ``.html``.

    Returns:
        True if the path's extension is in ``extensions`` (case-insensitive).
    """
    return extension_of(path) in {ext.lower() for ext in extensions}


def replace_extension(path: str, extension: str) -> str:
    """Swap the last extension of a POSIX path.

    Examples:
        >>> replace_extension("docs/intro.md", ".html")
        'docs/intro.html'
    """
    return PurePosixPath(path).with_suffix(extension).as_posix()


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Check if an input-relative POSIX path matches any glob pattern."""
    return any(fnmatch.fnmatch(path, pattern) for pattern in patterns)


def parent_dirs(path: str) -> Iterator[str]:
    """Yield the directories containing ``path``, nearest first.

    The input root is represented by ``""`` and is always yielded last.

    Examples:
        >>> list(parent_dirs("a/b/page.html"))
        ['a/b', 'a', '']
    """
    parent = PurePosixPath(path).parent
    while parent.as_posix() != ".":
        yield parent.as_posix()
        parent = parent.parent
    yield ""


def to_posix(path: str) -> str:
    """Normalize a plugin-supplied path into an input-relative identity.

    Examples:
        >>> to_posix("/docs/../css/site.css")
        'css/site.css'
    """
    return posixpath.normpath(path.replace("\\", "/")).lstrip("/")


def is_partial(path: str) -> bool:
    """Check if a file is a partial (its name starts with ``_``)."""
    return PurePosixPath(path).name.startswith("_")
