"""HTML utility functions for Plinth.

This module finds and rewrites asset references (stylesheets, scripts,
images) inside HTML without reparsing or reformatting the document, so
untouched bytes stay byte-identical between runs.

Functions:
    is_local_reference: Check if an attribute value points at a local file.
    asset_attribute: Name of the attribute holding a tag's asset URL.
    rewrite_asset_urls: Rewrite asset URLs in place through a callback.
    iter_asset_urls: List the asset URLs of a document.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator

# Tags whose attribute points at an asset we may rewrite
_TAG_RE = re.compile(
    r"<(?P<tag>link|script|img)\b(?P<attrs>[^>]*)>", re.IGNORECASE
)

_ATTR_RE = re.compile(
    r"(?P<name>[^\s=/>\"']+)\s*=\s*(?P<quote>[\"'])(?P<value>.*?)(?P=quote)",
    re.DOTALL,
)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

# URL prefixes that should not be modified
_URL_SKIP_PREFIXES = (
    "//",
    "#",
    "{{",
    "{%",
)

# Links without a rel attribute still count when they point at a style sheet
_STYLESHEET_EXTENSIONS = (".css", ".scss", ".sass", ".less")

_ASSET_ATTRIBUTES = {
    "link": "href",
    "script": "src",
    "img": "src",
}


def is_local_reference(url: str) -> bool:
    """Check if an attribute value references a same-origin local file.

    Absolute and protocol-relative URLs, ``data:`` and other scheme URIs,
    fragments, template expressions and values already carrying a query
    string are not local references.

    Args:
        url: Raw attribute value.

    Returns:
        True if the value can be resolved to a file on disk.

    Examples:
        >>> is_local_reference("css/site.css")
        True
        >>> is_local_reference("https://cdn.example.com/lib.js")
        False
        >>> is_local_reference("app.js?v=2")
        False
    """
    value = url.strip()
    if not value or "?" in value:
        return False
    if value.startswith(_URL_SKIP_PREFIXES):
        return False
    if _SCHEME_RE.match(value):
        return False
    return True


def _attributes(attrs: str) -> dict[str, re.Match]:
    found: dict[str, re.Match] = {}
    for match in _ATTR_RE.finditer(attrs):
        found.setdefault(match.group("name").lower(), match)
    return found


def asset_attribute(tag: str, attrs: str) -> str | None:
    """Return the attribute holding the asset URL for a tag, if any.

    Links only count when their ``rel`` includes ``stylesheet``, or when
    they have no ``rel`` and their ``href`` names a style sheet file.

    Args:
        tag: Tag name (``link``, ``script`` or ``img``).
        attrs: Raw attribute text of the tag.

    Returns:
        Attribute name, or None if the tag does not reference an asset.
    """
    tag = tag.lower()
    attr = _ASSET_ATTRIBUTES.get(tag)
    if attr is None:
        return None
    if tag == "link":
        found = _attributes(attrs)
        rel = found.get("rel")
        if rel is not None:
            if "stylesheet" not in rel.group("value").lower().split():
                return None
        else:
            href = found.get("href")
            value = href.group("value") if href else ""
            value = value.split("#", 1)[0].split("?", 1)[0].lower()
            if not value.endswith(_STYLESHEET_EXTENSIONS):
                return None
    return attr


def iter_asset_urls(
    html: str, tags: Iterable[str] = ("link", "script", "img")
) -> Iterator[tuple[str, str]]:
    """Yield ``(tag, url)`` for every asset reference in HTML, local or not."""
    wanted = {tag.lower() for tag in tags}
    for match in _TAG_RE.finditer(html):
        tag = match.group("tag").lower()
        if tag not in wanted:
            continue
        attrs = match.group("attrs")
        attr = asset_attribute(tag, attrs)
        found = _attributes(attrs).get(attr) if attr else None
        if found is not None:
            yield tag, found.group("value")


def rewrite_asset_urls(
    html: str,
    replace: Callable[[str, str], str | None],
    tags: Iterable[str] = ("link", "script", "img"),
) -> str:
    """Rewrite asset URLs found in HTML.

    Calls ``replace(tag, url)`` for every stylesheet link, script and image
    whose URL is a local reference. A returned string replaces the URL
    inside the attribute; ``None`` leaves the tag untouched. Everything
    outside the rewritten attribute values is preserved byte for byte.

    Args:
        html: HTML content to process.
        replace: Callback receiving the tag name and the current URL.
        tags: Tag names to consider.

    Returns:
        HTML with the selected URLs rewritten.
    """
    wanted = {tag.lower() for tag in tags}

    def repl(match: re.Match) -> str:
        tag = match.group("tag").lower()
        if tag not in wanted:
            return match.group(0)
        attrs = match.group("attrs")
        attr = asset_attribute(tag, attrs)
        if attr is None:
            return match.group(0)
        found = _attributes(attrs).get(attr)
        if found is None:
            return match.group(0)
        url = found.group("value")
        if not is_local_reference(url):
            return match.group(0)
        new_url = replace(tag, url)
        if new_url is None or new_url == url:
            return match.group(0)
        start, end = found.span("value")
        offset = match.start("attrs") - match.start()
        text = match.group(0)
        return text[: offset + start] + new_url + text[offset + end :]

    return _TAG_RE.sub(repl, html)
