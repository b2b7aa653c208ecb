"""Content plugins for Plinth.

Plugins are the steps of the build chain. Each one claims files by
extension and returns an action (see ``plinth.actions``). The built-in
chain always runs in this order, after any user plugins:

    markdown -> jinja -> style -> js (optional) -> cache-bust -> html pages

Compilers come before cache busting so the references inside compiled
output are busted too, and page templating comes last so the template's
own (already busted) markup is never rewritten twice.

Key classes:
- BasePlugin: Shared behaviour for all plugins.
- MarkdownPlugin, JinjaPlugin, StylePlugin, JSMinifyPlugin,
  CacheBustPlugin, HtmlPagePlugin: The built-in chain.
- FunctionPlugin: Wraps a plain function as a plugin.
"""

from __future__ import annotations

import importlib
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from markupsafe import escape

from .actions import Action, Remove, Rename
from .cachebust import ReferenceRewriter, resolve_reference
from .errors import BuildError, CompileError, ConfigError
from .html_utils import rewrite_asset_urls
from .templates import CONTENT_BLOCK, is_template_page, make_block, render_page
from .utils import (
    STYLE_EXTENSIONS,
    extension_of,
    has_extension,
    is_partial,
    replace_extension,
)

if TYPE_CHECKING:
    from .config import BuildConfig
    from .context import BuildContext
    from .protocols import Plugin

_BLOCK_NAME_RE = re.compile(r"^[\w.-]+$")


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lowercase extensions and make sure each starts with a dot."""
    normalized = set()
    for ext in extensions:
        ext = ext.strip().lower()
        if ext:
            normalized.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(normalized)


class BasePlugin(ABC):
    """Base class for content plugins.

    Subclasses set ``name`` and ``extensions`` and implement ``parse``.
    ``target`` defaults to keeping the file's identity.

    Attributes:
        name: Short name used in logs and error messages.
        extensions: Dotted, lowercase extensions the plugin claims.
        applies_to_templates: Whether templates also go through the plugin.
    """

    name = "plugin"
    extensions: frozenset[str] = frozenset()
    applies_to_templates = True

    def accepts(self, path: str) -> bool:
        """Check if the plugin claims ``path`` by its current extension."""
        return has_extension(path, self.extensions)

    @abstractmethod
    def parse(
        self, context: BuildContext, path: str, content: str
    ) -> Action | str | list:
        """Transform one file. See ``plinth.protocols.Plugin``."""
        ...

    def target(self, path: str) -> str | None:
        """Predict the identity this plugin gives ``path``."""
        return path

    def dependencies(self, context: BuildContext, path: str) -> Iterable[str]:
        """Input files whose changes make the output of ``path`` stale."""
        return ()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {sorted(self.extensions)}>"


class FunctionPlugin(BasePlugin):
    """Adapts a plain ``parse(context, path, content)`` function into a plugin.

    Args:
        extensions: Extensions the function handles.
        parse: The transform function.
        name: Name used in logs (defaults to the function name).
        applies_to_templates: Whether templates also go through it.
        target: Optional identity prediction function.
    """

    def __init__(
        self,
        extensions: Iterable[str],
        parse: Callable[[BuildContext, str, str], Any],
        name: str | None = None,
        applies_to_templates: bool = True,
        target: Callable[[str], str | None] | None = None,
    ):
        self.extensions = normalize_extensions(extensions)
        self._parse = parse
        self.name = name or getattr(parse, "__name__", "plugin")
        self.applies_to_templates = applies_to_templates
        self._target = target

    def parse(self, context: BuildContext, path: str, content: str) -> Any:
        return self._parse(context, path, content)

    def target(self, path: str) -> str | None:
        if self._target is None:
            return path
        return self._target(path)


class MarkdownPlugin(BasePlugin):
    """Renders Markdown pages to template-driven HTML.

    ``notes/intro.md`` becomes ``notes/intro.html``. The rendered body is
    wrapped in the content block; front-matter scalars and the page title
    (front matter ``title`` or the first heading) become variable blocks.
    """

    name = "markdown"
    extensions = frozenset({".md", ".markdown"})
    applies_to_templates = False

    def parse(self, context: BuildContext, path: str, content: str) -> Action:
        result = context.compile("markdown", path, content)
        metadata = result.artifacts.get("metadata", {})
        headings = result.artifacts.get("headings", [])

        blocks = []
        title = metadata.get("title")
        if title is not None:
            blocks.append(make_block("title", str(escape(title))))
        elif headings:
            blocks.append(make_block("title", headings[0].text))
        for key, value in metadata.items():
            if key in ("title", CONTENT_BLOCK) or not _BLOCK_NAME_RE.match(str(key)):
                continue
            if isinstance(value, (str, int, float, bool)):
                blocks.append(make_block(str(key), str(escape(value))))
        blocks.append(make_block(CONTENT_BLOCK, f"\n{result.output}"))
        return Rename(self.target(path), "\n".join(blocks) + "\n")

    def target(self, path: str) -> str | None:
        return replace_extension(path, ".html")


class JinjaPlugin(BasePlugin):
    """Renders Jinja2 pages.

    ``about.html.jinja`` and ``about.jinja`` both become ``about.html``.
    Files starting with ``_`` are partials used by other pages through
    ``{% include %}`` / ``{% extends %}`` and are not written themselves.
    """

    name = "jinja"
    extensions = frozenset({".jinja"})
    applies_to_templates = False

    def parse(self, context: BuildContext, path: str, content: str) -> Action:
        target = self.target(path)
        if target is None:
            return Remove()
        result = context.compile(
            "jinja",
            path,
            content,
            options={"context": {"page_path": target, "source_path": path}},
        )
        return Rename(target, result.output)

    def dependencies(self, context: BuildContext, path: str) -> list[str]:
        return [
            other
            for other in context.files
            if other != path and is_partial(other) and has_extension(other, self.extensions)
        ]

    def target(self, path: str) -> str | None:
        if is_partial(path):
            return None
        stem = PurePosixPath(path).with_suffix("")
        if not stem.suffix:
            stem = stem.with_suffix(".html")
        return stem.as_posix()


class StylePlugin(BasePlugin):
    """Compiles Sass/SCSS sources and points HTML at the compiled CSS.

    Style sources are renamed to ``.css`` with compiled content; partials
    (``_vars.scss``) are only ever imported and are removed. In HTML,
    stylesheet links to an existing style source are rewritten to its
    ``.css`` name and the compiled bytes are registered in the context so
    the cache-buster hashes the compiled output, not the source.

    Args:
        html_extensions: Extensions of the HTML files whose links are rewritten.
    """

    name = "style"
    applies_to_templates = True

    def __init__(self, html_extensions: Iterable[str] = (".html", ".htm")):
        self.html_extensions = normalize_extensions(html_extensions)
        self.extensions = STYLE_EXTENSIONS | self.html_extensions

    def parse(self, context: BuildContext, path: str, content: str) -> Action | str:
        if extension_of(path) in STYLE_EXTENSIONS:
            if is_partial(path):
                return Remove()
            css = context.compile_style(path, content)
            return Rename(replace_extension(path, ".css"), css)
        return self._rewrite_links(context, path, content)

    def _rewrite_links(self, context: BuildContext, path: str, content: str) -> str:
        def replace(tag: str, url: str) -> str | None:
            ext = extension_of(url.split("#", 1)[0])
            if ext not in STYLE_EXTENSIONS:
                return None
            resolved = resolve_reference(url, path)
            if resolved is None or is_partial(resolved):
                return None
            if not context.input_path(resolved).is_file():
                return None
            try:
                context.compile_style(resolved)
            except CompileError as exc:
                raise BuildError(context.input_path(resolved), str(exc), exc) from exc
            base, sep, fragment = url.partition("#")
            return base[: -len(ext)] + ".css" + sep + fragment

        return rewrite_asset_urls(content, replace, tags=("link",))

    def target(self, path: str) -> str | None:
        if extension_of(path) in STYLE_EXTENSIONS:
            return None if is_partial(path) else replace_extension(path, ".css")
        return path


class JSMinifyPlugin(BasePlugin):
    """Minifies JavaScript files. Files named ``*.min.js`` are left alone."""

    name = "js"
    extensions = frozenset({".js"})
    applies_to_templates = False

    def parse(self, context: BuildContext, path: str, content: str) -> str:
        if path.lower().endswith(".min.js"):
            return content
        return context.compile("js", path, content).output


class CacheBustPlugin(BasePlugin):
    """Appends content-hash tokens to local asset references in HTML.

    Args:
        html_extensions: Extensions of the HTML files to rewrite.
    """

    name = "cachebust"
    applies_to_templates = True

    def __init__(self, html_extensions: Iterable[str] = (".html", ".htm")):
        self.extensions = normalize_extensions(html_extensions)

    def parse(self, context: BuildContext, path: str, content: str) -> str:
        return ReferenceRewriter(context).rewrite(content, path)


class HtmlPagePlugin(BasePlugin):
    """Splices template-driven pages into their directory's template.

    Pages without a content block are not template pages and pass through
    unmodified.

    Args:
        html_extensions: Extensions of the HTML pages.
    """

    name = "html"
    applies_to_templates = False

    def __init__(self, html_extensions: Iterable[str] = (".html", ".htm")):
        self.extensions = normalize_extensions(html_extensions)

    def parse(self, context: BuildContext, path: str, content: str) -> str:
        if not is_template_page(content):
            return content
        return render_page(context.template_for(path), content)


def load_plugin(spec: str) -> Plugin:
    """Import a user plugin from a ``package.module:attribute`` string.

    The attribute may be a plugin instance, a plugin class or a factory
    called without arguments. Objects that only provide ``extensions`` and
    ``parse`` are wrapped in a FunctionPlugin.

    Args:
        spec: Import string from the configuration.

    Returns:
        The plugin.

    Raises:
        ConfigError: If the plugin cannot be imported or is malformed.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Plugin '{spec}' must look like 'package.module:attribute'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import plugin module '{module_name}': {exc}") from exc
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"Plugin module '{module_name}' has no attribute '{attr}'") from None

    if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "parse")):
        obj = obj()
    if not hasattr(obj, "extensions") or not callable(getattr(obj, "parse", None)):
        raise ConfigError(f"Plugin '{spec}' must provide 'extensions' and 'parse'")
    if isinstance(obj, BasePlugin):
        return obj
    return FunctionPlugin(
        obj.extensions,
        obj.parse,
        name=getattr(obj, "name", attr),
        applies_to_templates=getattr(obj, "applies_to_templates", True),
        target=getattr(obj, "target", None),
    )


def build_plugin_chain(
    config: BuildConfig, extra: Sequence[Plugin] = ()
) -> list[Plugin]:
    """Assemble the ordered plugin chain for a project.

    User plugins (from configuration, then ``extra``) run ahead of the
    built-in chain.

    Args:
        config: Project configuration.
        extra: Plugin objects supplied programmatically.

    Returns:
        Ordered list of plugins.
    """
    chain: list[Plugin] = [load_plugin(spec) for spec in config.plugins]
    chain.extend(extra)
    html = config.html_extensions
    chain.extend([MarkdownPlugin(), JinjaPlugin(), StylePlugin(html)])
    if config.minify_js:
        chain.append(JSMinifyPlugin())
    chain.extend([CacheBustPlugin(html), HtmlPagePlugin(html)])
    return chain
