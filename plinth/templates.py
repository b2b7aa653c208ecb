"""Page templates for Plinth.

Any file named like ``config.template`` defines the page template of its
directory. Content files use the template of the nearest directory up the
tree that defines one, so a template in ``docs/`` overrides the root
template for everything under ``docs/``.

Pages mark the parts they contribute with comment pairs::

    <!-- build:title -->About us<!-- /build:title -->
    <!-- build:content --><h1>About</h1><!-- /build:content -->

A page holding a ``content`` pair is template-driven: its blocks replace
the matching slots of the template. Templates declare slots either as a
pair with default content or as a single ``<!-- build:NAME -->`` marker.

Key objects:
- TemplateMap: Rendered templates keyed by directory.
- build_template_map: Render every template through the plugin chain.
- render_page: Splice a page's blocks into its template.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from .actions import Remove, Rename, Unchanged, call_plugin, flatten
from .errors import (
    BuildError,
    ConfigError,
    TemplateNotFoundError,
    format_error_message,
)
from .utils import has_extension, is_newer, parent_dirs

if TYPE_CHECKING:
    from .context import BuildContext
    from .protocols import Plugin

logger = logging.getLogger(__name__)

CONTENT_BLOCK = "content"

_BLOCK_RE = re.compile(
    r"<!--\s*build:(?P<name>[\w.-]+)\s*-->(?P<body>.*?)<!--\s*/build:(?P=name)\s*-->",
    re.DOTALL,
)

_SLOT_RE = re.compile(
    r"<!--\s*build:(?P<name>[\w.-]+)\s*-->"
    r"(?:(?P<body>.*?)<!--\s*/build:(?P=name)\s*-->)?",
    re.DOTALL,
)


def extract_blocks(content: str) -> dict[str, str]:
    """Collect the marker-delimited blocks of a page.

    Args:
        content: Page content.

    Returns:
        Mapping of block name to body. The first block of a name wins.
    """
    blocks: dict[str, str] = {}
    for match in _BLOCK_RE.finditer(content):
        blocks.setdefault(match.group("name"), match.group("body"))
    return blocks


def is_template_page(content: str) -> bool:
    """Check if a page carries a content block and so uses a template."""
    return CONTENT_BLOCK in extract_blocks(content)


def _fill_slots(template: str, values: dict[str, str]) -> str:
    def repl(match: re.Match) -> str:
        name = match.group("name")
        if name in values:
            return values[name]
        return match.group(0)

    return _SLOT_RE.sub(repl, template)


def render_page(template: str, page: str) -> str:
    """Render a page into its template.

    Variable blocks are substituted first, the content block last. Slots the
    page does not fill are left as they are in the template.

    Args:
        template: Rendered template content.
        page: Page content with marker-delimited blocks.

    Returns:
        The rendered page, or ``page`` unchanged if it has no content block.

    Examples:
        >>> render_page("<main><!-- build:content --></main>",
        ...             "<!-- build:content -->Hi<!-- /build:content -->")
        '<main>Hi</main>'
    """
    blocks = extract_blocks(page)
    if CONTENT_BLOCK not in blocks:
        return page
    variables = {k: v for k, v in blocks.items() if k != CONTENT_BLOCK}
    rendered = _fill_slots(template, variables)
    return _fill_slots(rendered, {CONTENT_BLOCK: blocks[CONTENT_BLOCK]})


def make_block(name: str, body: str) -> str:
    """Wrap ``body`` in a named marker pair."""
    return f"<!-- build:{name} -->{body}<!-- /build:{name} -->"


def template_dir(path: str) -> str:
    """Return the input-relative directory of a template path (``""`` for the root)."""
    parent = PurePosixPath(path).parent.as_posix()
    return "" if parent == "." else parent


@dataclass
class TemplateMap:
    """Rendered templates keyed by input-relative directory.

    Attributes:
        templates: Directory to rendered template content.
        sources: Directory to the template's input-relative path.
        changed: Directories whose template output was rewritten this run.
    """

    templates: dict[str, str] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)
    changed: set[str] = field(default_factory=set)

    def add(self, path: str, content: str, changed: bool = False) -> None:
        """Record the rendered template defined at ``path``."""
        directory = template_dir(path)
        self.templates[directory] = content
        self.sources[directory] = path
        if changed:
            self.changed.add(directory)

    def resolve_dir(self, path: str) -> str | None:
        """Return the directory whose template governs ``path``, if any."""
        for directory in parent_dirs(path):
            if directory in self.templates:
                return directory
        return None

    def template_for(self, path: str, template_name: str) -> str:
        """Return the rendered template governing ``path``.

        Args:
            path: Input-relative path of a content file.
            template_name: Configured template file name, for the error message.

        Returns:
            Rendered template content.

        Raises:
            TemplateNotFoundError: If no directory up the chain defines one.
        """
        directory = self.resolve_dir(path)
        if directory is None:
            expected = (PurePosixPath(template_dir(path)) / template_name).as_posix()
            raise TemplateNotFoundError(path, expected)
        return self.templates[directory]

    def is_changed_for(self, path: str) -> bool:
        """Check if the template governing ``path`` changed this run."""
        directory = self.resolve_dir(path)
        return directory is not None and directory in self.changed

    def __contains__(self, directory: object) -> bool:
        return directory in self.templates

    def __len__(self) -> int:
        return len(self.templates)


def find_templates(paths: Iterable[str], template_name: str) -> list[str]:
    """Return the paths whose base name is the configured template name."""
    return sorted(p for p in paths if PurePosixPath(p).name == template_name)


def _render_template(
    context: BuildContext, path: str, plugins: Sequence[Plugin]
) -> str:
    try:
        content = context.read_source(path)
    except OSError as exc:
        raise BuildError(
            context.input_path(path), format_error_message(exc), exc
        ) from exc
    for plugin in plugins:
        if not plugin.applies_to_templates or not has_extension(path, plugin.extensions):
            continue
        for action in flatten(call_plugin(plugin, context, path, content)):
            if isinstance(action, (Unchanged, Rename)):
                content = action.content
            elif isinstance(action, Remove):
                logger.debug("Ignoring removal requested for template %s", path)
    return content


def _write_template(context: BuildContext, path: str, content: str) -> bool:
    """Write a rendered template if its source is newer or its bytes changed."""
    target = context.output_path(path)
    payload = content.encode("utf-8")
    changed = is_newer(context.input_path(path), target)
    if not changed:
        try:
            changed = target.read_bytes() != payload
        except OSError:
            changed = True
    if changed:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)
        logger.debug("Template %s written", path)
    else:
        logger.debug("Template %s unchanged", path)
    return changed


def build_template_map(
    context: BuildContext, template_paths: Sequence[str], plugins: Sequence[Plugin]
) -> TemplateMap:
    """Render every template and record it for its directory.

    Each template goes through the plugins that accept templates and its
    extension, then is written to the output tree when it changed. The map
    is stored on ``context`` and returned.

    Args:
        context: Per-run build context.
        template_paths: Input-relative paths of the template files.
        plugins: The ordered plugin chain.

    Returns:
        The completed TemplateMap.

    Raises:
        ConfigError: If there are no templates at all.
        BuildError: If rendering a template fails.
    """
    if not template_paths:
        raise ConfigError(
            f"Template file {context.config.template} not found under {context.config.input}"
        )
    template_map = TemplateMap()
    context.template_map = template_map
    for path in template_paths:
        content = _render_template(context, path, plugins)
        template_map.add(path, content, changed=_write_template(context, path, content))
    return template_map
