"""External compilers for Plinth.

Each compiler wraps an off-the-shelf engine behind the Compiler protocol:
``compile(source, options) -> CompileResult``. Plugins look compilers up by
name in a CompilerRegistry that is handed to the orchestrator, so tests and
projects can swap any engine without touching the plugins.

Key classes:
- MarkdownCompiler: Markdown to HTML with mistune and Pygments.
- JinjaCompiler: Jinja2 page templates.
- SassCompiler: Sass/SCSS through the ``sass`` command line tool.
- JSMinifier: JavaScript minification with rjsmin.
- CompilerRegistry: Name to compiler table.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import mistune
import yaml
from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    TemplateSyntaxError,
    Undefined,
)
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound
from rjsmin import jsmin

from .errors import CompileError, ConfigError
from .protocols import CompileResult, Compiler

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Find an executable in PATH or local node_modules.

    Args:
        name: Name of the executable to find (e.g., 'sass').
        project_root: Optional project root directory to search for
            local node_modules installations.

    Returns:
        Full path to the executable if found, None otherwise.
    """
    found = shutil.which(name)
    if found:
        return found
    if project_root is not None:
        local = project_root / "node_modules" / ".bin" / name
        if local.exists():
            return str(local)
    return None


@dataclass
class Heading:
    """A heading collected while rendering Markdown."""

    id: str
    text: str
    level: int


def _generate_heading_id(text: str) -> str:
    """Generate a URL-friendly ID from heading text.

    Args:
        text: The heading text.

    Returns:
        URL-friendly slug suitable for anchor links.
    """
    slug = re.sub(r"<[^>]+>", "", text).lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-")


def split_front_matter(source: str) -> tuple[dict[str, Any], str]:
    """Split a leading YAML front matter block from Markdown source.

    Args:
        source: Markdown source, optionally starting with ``---`` front matter.

    Returns:
        Tuple of (metadata dict, remaining body).

    Raises:
        CompileError: If the front matter is not a valid YAML mapping.
    """
    match = _FRONT_MATTER_RE.match(source)
    if not match:
        return {}, source
    try:
        metadata = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise CompileError(f"Invalid front matter: {exc}") from exc
    if not isinstance(metadata, dict):
        raise CompileError("Front matter must be a mapping")
    return metadata, source[match.end():]


class _HighlightRenderer(mistune.HTMLRenderer):
    """Markdown renderer with heading ids and syntax highlighting.

    Attributes:
        headings: List of Heading objects extracted during rendering.
    """

    def __init__(self, highlight_code: bool = True):
        super().__init__(escape=False)
        self.highlight_code = highlight_code
        self.headings: list[Heading] = []
        self._heading_id_counts: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        """Render a heading with a unique auto-generated id."""
        base_id = _generate_heading_id(text)

        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id

        self.headings.append(Heading(id=heading_id, text=text, level=level))
        return f'<h{level} id="{heading_id}">{text}</h{level}>\n'

    def block_code(self, code: str, info: str | None = None) -> str:
        """Render a code block, highlighted with Pygments when the language is known."""
        lang = info.split()[0] if info else None
        if lang and self.highlight_code:
            try:
                lexer = get_lexer_by_name(lang, stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                formatter = HtmlFormatter(nowrap=False, cssclass="highlight")
                return highlight(code, lexer, formatter)
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        lang_class = f' class="language-{lang}"' if lang else ""
        return f"<pre><code{lang_class}>{escaped}</code></pre>\n"


class MarkdownCompiler:
    """Renders Markdown to HTML.

    Options:
        plugins: mistune plugin names (default: strikethrough, footnotes,
            table, url).
        highlight: Highlight fenced code with Pygments (default True).
        front_matter: Parse a leading YAML block (default True).
    """

    DEFAULT_PLUGINS = ("strikethrough", "footnotes", "table", "url")

    def compile(self, source: str, options: Mapping[str, Any]) -> CompileResult:
        metadata: dict[str, Any] = {}
        body = source
        if options.get("front_matter", True):
            metadata, body = split_front_matter(source)
        renderer = _HighlightRenderer(highlight_code=bool(options.get("highlight", True)))
        markdown = mistune.create_markdown(
            renderer=renderer,
            plugins=list(options.get("plugins", self.DEFAULT_PLUGINS)),
        )
        html = markdown(body)
        return CompileResult(
            output=html,
            artifacts={"metadata": metadata, "headings": renderer.headings},
        )


class JinjaCompiler:
    """Renders Jinja2 page templates.

    The loader is rooted at ``search_path`` (the input directory) so pages
    can ``{% extends %}`` and ``{% include %}`` other files of the site.

    Options:
        globals: Variables available to every page.
        context: Variables for this render only (set by the plugin).
        strict: Raise on undefined variables (default False).
    """

    def __init__(self, search_path: Path | None = None):
        self.search_path = search_path
        self._environments: dict[bool, Environment] = {}

    def _environment(self, strict: bool) -> Environment:
        if strict not in self._environments:
            loader = (
                FileSystemLoader(str(self.search_path))
                if self.search_path is not None
                else None
            )
            env = Environment(
                loader=loader,
                keep_trailing_newline=True,
                undefined=StrictUndefined if strict else Undefined,
            )
            self._environments[strict] = env
        return self._environments[strict]

    def compile(self, source: str, options: Mapping[str, Any]) -> CompileResult:
        env = self._environment(bool(options.get("strict", False)))
        context = {**dict(options.get("globals", {})), **dict(options.get("context", {}))}
        try:
            rendered = env.from_string(source).render(**context)
        except TemplateSyntaxError as exc:
            raise CompileError(
                f"Template syntax error on line {exc.lineno}: {exc.message}"
            ) from exc
        except TemplateError as exc:
            raise CompileError(f"{type(exc).__name__}: {exc}") from exc
        return CompileResult(output=rendered)


class SassCompiler:
    """Compiles Sass/SCSS with the ``sass`` command line tool.

    The source is piped on stdin so no temporary files are written into
    the watched tree.

    Options:
        load_paths: Extra directories for ``@use`` / ``@import`` lookups.
        style: ``expanded`` (default) or ``compressed``.
        indented: Parse the indented ``.sass`` syntax.
        source_map: Embed a source map in the output (default False).
    """

    def __init__(self, project_root: Path | None = None):
        self.project_root = project_root

    def compile(self, source: str, options: Mapping[str, Any]) -> CompileResult:
        sass_bin = find_executable("sass", self.project_root)
        if not sass_bin:
            raise CompileError(
                "Sass CLI not found. Install with `npm install -g sass` "
                "or `npm install -D sass` in the project."
            )

        cmd = [sass_bin, "--stdin", "--style", str(options.get("style", "expanded"))]
        if options.get("indented"):
            cmd.append("--indented")
        cmd.append("--embed-source-map" if options.get("source_map") else "--no-source-map")
        for load_path in options.get("load_paths", ()):
            cmd.extend(["--load-path", str(load_path)])

        result = subprocess.run(cmd, input=source, capture_output=True, text=True)
        if result.returncode != 0:
            raise CompileError(f"Sass compilation failed: {result.stderr.strip()}")
        return CompileResult(output=result.stdout)


class JSMinifier:
    """Minifies JavaScript with rjsmin.

    Options:
        keep_bang_comments: Keep ``/*! ... */`` licence comments.
    """

    def compile(self, source: str, options: Mapping[str, Any]) -> CompileResult:
        minified = jsmin(source, keep_bang_comments=bool(options.get("keep_bang_comments")))
        return CompileResult(output=minified)


class CompilerRegistry:
    """Table of available compilers, keyed by name.

    The orchestrator is constructed with a registry; acquiring a compiler is
    a dictionary lookup.
    """

    def __init__(self, compilers: Mapping[str, Compiler] | None = None):
        self._compilers: dict[str, Compiler] = dict(compilers or {})

    def register(self, name: str, compiler: Compiler) -> None:
        """Register (or replace) a compiler under ``name``."""
        self._compilers[name] = compiler

    def get(self, name: str) -> Compiler:
        """Return the compiler registered under ``name``.

        Raises:
            ConfigError: If no compiler has that name.
        """
        try:
            return self._compilers[name]
        except KeyError:
            raise ConfigError(f"No compiler registered under '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self._compilers

    def names(self) -> list[str]:
        """Return registered compiler names, sorted."""
        return sorted(self._compilers)


def create_default_compilers(
    input_dir: Path | None = None, project_root: Path | None = None
) -> CompilerRegistry:
    """Create a registry with the built-in compilers.

    Args:
        input_dir: Input root, used as the Jinja loader path.
        project_root: Project root, searched for ``node_modules/.bin``.

    Returns:
        Configured CompilerRegistry.
    """
    registry = CompilerRegistry()
    registry.register("markdown", MarkdownCompiler())
    registry.register("jinja", JinjaCompiler(input_dir))
    registry.register("sass", SassCompiler(project_root))
    registry.register("js", JSMinifier())
    return registry
