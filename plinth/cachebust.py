"""Cache-busting reference rewriter for Plinth.

Appends ``?<hash>`` to local stylesheet, script and image references so
browsers refetch an asset exactly when its bytes change. Hashes are
memoized per build run in the context's ``bust_memo``.

Key classes:
- ReferenceRewriter: Rewrites the asset references of one HTML document.
"""

from __future__ import annotations

import logging
import posixpath
import re
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from .errors import BuildError, CompileError
from .html_utils import is_local_reference, iter_asset_urls, rewrite_asset_urls
from .utils import content_hash

if TYPE_CHECKING:
    from .context import BuildContext

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[0-9a-z]+$")


def _read_file(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except OSError:
        return None


def resolve_reference(url: str, page_path: str) -> str | None:
    """Resolve an attribute value to an input-relative POSIX path.

    Root-relative values (``/css/site.css``) resolve against the input root,
    other values against the directory of the page.

    Args:
        url: Local reference taken from the HTML.
        page_path: Input-relative path of the page holding the reference.

    Returns:
        Normalized input-relative path, or None if it escapes the input root.

    Examples:
        >>> resolve_reference("/css/site.css", "docs/index.html")
        'css/site.css'
        >>> resolve_reference("../img/logo.png", "docs/index.html")
        'img/logo.png'
    """
    value = url.split("#", 1)[0].strip()
    if value.startswith("/"):
        joined = value.lstrip("/")
    else:
        base = PurePosixPath(page_path).parent.as_posix()
        joined = value if base == "." else f"{base}/{value}"
    normalized = posixpath.normpath(joined)
    if normalized in (".", "") or normalized.startswith("../") or normalized == "..":
        return None
    return normalized


class ReferenceRewriter:
    """Rewrites asset references in HTML with content-hash query strings.

    Assets are looked up, in order, among the bytes compiled earlier in
    this run, in the input tree, as the compiled form of a style source
    next to them, then in the output tree. Missing assets are reported with a
    warning and left untouched.

    Attributes:
        context: Per-run build context holding the memo.
    """

    def __init__(self, context: BuildContext):
        self.context = context

    def token_for(self, resolved: str) -> str | None:
        """Return the hash token of an input-relative asset, or None if missing."""
        memo = self.context.bust_memo
        if resolved in memo:
            return memo[resolved]
        payload = self._read_asset(resolved)
        if payload is None:
            return None
        token = content_hash(payload)
        memo[resolved] = token
        return token

    def _read_asset(self, resolved: str) -> bytes | None:
        generated = self.context.generated.get(resolved)
        if generated is not None:
            return generated
        payload = _read_file(self.context.input_path(resolved))
        if payload is not None:
            return payload
        style = self.context.style_source_for(resolved)
        if style is not None:
            try:
                return self.context.compile_style(style).encode("utf-8")
            except CompileError as exc:
                raise BuildError(self.context.input_path(style), str(exc), exc) from exc
        return _read_file(self.context.output_path(resolved))

    def is_current(self, html: str, path: str) -> bool:
        """Check that every token in already-busted HTML matches its asset.

        A token whose asset changed or disappeared, or an unbusted reference
        whose asset now exists, means the page must be rebuilt.

        Args:
            html: HTML previously written for the page.
            path: Input-relative identity of the page.
        """
        for _tag, url in iter_asset_urls(html):
            value, sep, query = url.partition("#")[0].partition("?")
            if not is_local_reference(value):
                continue
            resolved = resolve_reference(value, path)
            if resolved is None:
                continue
            token = self.token_for(resolved)
            if sep:
                if _TOKEN_RE.match(query) and query != token:
                    return False
            elif token is not None:
                return False
        return True

    def rewrite(self, html: str, path: str) -> str:
        """Append content-hash tokens to the local asset references of a page.

        Args:
            html: Rendered HTML.
            path: Input-relative path of the page (or template).

        Returns:
            HTML with every resolvable reference suffixed by ``?<token>``.
        """

        def replace(tag: str, url: str) -> str | None:
            resolved = resolve_reference(url, path)
            token = self.token_for(resolved) if resolved else None
            if token is None:
                logger.warning("%s: referenced asset %s not found", path, url)
                return None
            base, sep, fragment = url.partition("#")
            return f"{base}?{token}{sep}{fragment}"

        return rewrite_asset_urls(html, replace)
