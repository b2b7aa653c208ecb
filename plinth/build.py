"""Site building functionality for Plinth.

This module contains the build orchestrator. A build discovers the input
tree, renders the per-directory templates, threads every claimed file
through the plugin chain and writes the results, doing only the work whose
inputs changed since the last run.

Incrementality comes from the output tree alone: a file is reprocessed when
its source is newer than the output it produced, or when the template that
governs it was rewritten during this run. There is no manifest.

Key objects:
- Builder: Runs builds for one configuration.
- BuildResult: What happened to every discovered file.
- build_site: Convenience wrapper for a single build.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .actions import Remove, Rename, Unchanged, call_plugin, flatten
from .cachebust import ReferenceRewriter
from .compilers import CompilerRegistry, create_default_compilers
from .config import BuildConfig
from .context import BuildContext
from .errors import BuildError, ConfigError, format_error_message
from .plugins import CacheBustPlugin, build_plugin_chain
from .protocols import Plugin
from .templates import build_template_map, find_templates
from .utils import ensure_clean_dir, has_extension, is_newer, matches_any, to_posix

logger = logging.getLogger(__name__)


class FileStatus(str, Enum):
    """Terminal state of a discovered file in one build run."""

    WRITTEN = "written"
    COPIED = "copied"
    REMOVED = "removed"
    SKIPPED = "skipped"


@dataclass
class BuildResult:
    """Result of a build run.

    Attributes:
        output_dir: Directory the site was built into.
        full: Whether the output was wiped before building.
        statuses: Terminal status per discovered file (original identity).
        outputs: Output identity per written or copied file.
        templates: Template path to whether its output was rewritten.
    """

    output_dir: Path
    full: bool = False
    statuses: dict[str, FileStatus] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    templates: dict[str, bool] = field(default_factory=dict)

    def mark(self, path: str, status: FileStatus, output: str | None = None) -> None:
        """Record the terminal status of ``path``.

        Raises:
            RuntimeError: If ``path`` already reached a terminal status.
        """
        if path in self.statuses:
            raise RuntimeError(
                f"{path} already {self.statuses[path].value}, cannot mark {status.value}"
            )
        self.statuses[path] = status
        if output is not None:
            self.outputs[path] = output

    def with_status(self, status: FileStatus) -> list[str]:
        """Return the files that ended in ``status``, sorted."""
        return sorted(p for p, s in self.statuses.items() if s is status)

    @property
    def written(self) -> list[str]:
        return self.with_status(FileStatus.WRITTEN)

    @property
    def copied(self) -> list[str]:
        return self.with_status(FileStatus.COPIED)

    @property
    def removed(self) -> list[str]:
        return self.with_status(FileStatus.REMOVED)

    @property
    def skipped(self) -> list[str]:
        return self.with_status(FileStatus.SKIPPED)

    @property
    def template_changed(self) -> bool:
        """Whether any template output was rewritten in this run."""
        return any(self.templates.values())


class Builder:
    """Builds a site from a configuration.

    The builder itself holds no per-run state; every run gets a fresh
    BuildContext, so one builder can serve a whole watch session.

    Attributes:
        config: Project configuration.
        plugins: Ordered plugin chain.
        compilers: Compiler table handed to every run.
    """

    def __init__(
        self,
        config: BuildConfig,
        plugins: Sequence[Plugin] | None = None,
        compilers: CompilerRegistry | None = None,
        extra_plugins: Sequence[Plugin] = (),
    ):
        """Initialize the builder.

        Args:
            config: Project configuration.
            plugins: Complete plugin chain; built from ``config`` when omitted.
            compilers: Compiler table; the built-in compilers when omitted.
            extra_plugins: Plugins run ahead of the built-in chain.
        """
        self.config = config
        self.plugins: list[Plugin] = (
            list(plugins)
            if plugins is not None
            else build_plugin_chain(config, extra_plugins)
        )
        self.compilers = compilers or create_default_compilers(config.input, config.root)

    def new_context(self) -> BuildContext:
        """Create the context for a new run."""
        return BuildContext(config=self.config, compilers=self.compilers)

    def discover(self) -> list[str]:
        """List every file under the input root as sorted POSIX paths.

        The output directory is skipped when it lives inside the input root.

        Raises:
            ConfigError: If the input directory does not exist.
        """
        input_dir = self.config.input
        if not input_dir.is_dir():
            raise ConfigError(f"Expected input directory at {input_dir}")
        output_dir = self.config.output.resolve()
        files = []
        for path in input_dir.rglob("*"):
            if not path.is_file():
                continue
            try:
                path.resolve().relative_to(output_dir)
                continue
            except ValueError:
                pass
            files.append(path.relative_to(input_dir).as_posix())
        return sorted(files)

    def partition(self, files: Sequence[str]) -> tuple[list[str], list[str], list[str]]:
        """Split discovered files into templates, pass-through files and candidates."""
        templates = find_templates(files, self.config.template)
        template_set = set(templates)
        pass_through = []
        candidates = []
        for path in files:
            if path in template_set:
                continue
            if matches_any(path, self.config.pass_through):
                pass_through.append(path)
            else:
                candidates.append(path)
        return templates, pass_through, candidates

    def claims(self, path: str) -> bool:
        """Check if at least one plugin claims ``path``."""
        return any(has_extension(path, p.extensions) for p in self.plugins)

    def predict_output(self, path: str) -> str | None:
        """Predict the output identity the plugin chain gives ``path``.

        Returns:
            The predicted identity, or None if a plugin would remove the file.
        """
        current = path
        for plugin in self.plugins:
            if not has_extension(current, plugin.extensions):
                continue
            target = plugin.target(current) if hasattr(plugin, "target") else current
            if target is None:
                return None
            current = target
        return current

    def _is_stale(self, context: BuildContext, path: str, predicted: str) -> bool:
        """Decide whether a claimed file must be rebuilt.

        The output is stale when the source, or any dependency a plugin
        declares for it, is newer than the output, or when the cache-bust
        tokens written into an HTML output no longer match their assets.

        Raises:
            FileNotFoundError: If the source itself has disappeared.
        """
        output = self.config.output / predicted
        if is_newer(self.config.input / path, output):
            return True
        current = path
        busted_as = None
        for plugin in self.plugins:
            if not has_extension(current, plugin.extensions):
                continue
            if isinstance(plugin, CacheBustPlugin):
                busted_as = current
            dependencies = getattr(plugin, "dependencies", None)
            for dependency in dependencies(context, current) if dependencies else ():
                try:
                    if is_newer(context.input_path(dependency), output):
                        return True
                except FileNotFoundError:
                    return True
            current = plugin.target(current) if hasattr(plugin, "target") else current
            if current is None:
                return True
        if busted_as is None:
            return False
        try:
            written = output.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return True
        return not ReferenceRewriter(context).is_current(written, busted_as)

    def run(self, full: bool = False) -> BuildResult:
        """Run one build.

        Args:
            full: Wipe the output directory first, guaranteeing no stale
                artifacts survive. Incremental runs keep the output tree.

        Returns:
            BuildResult describing every discovered file.

        Raises:
            ConfigError: On missing input, templates or template coverage.
            BuildError: When a plugin or compiler fails on a file.
        """
        output_dir = self.config.output
        if full:
            ensure_clean_dir(output_dir)
        else:
            output_dir.mkdir(parents=True, exist_ok=True)

        context = self.new_context()
        files = self.discover()
        context.files = files
        templates, pass_through, candidates = self.partition(files)

        template_map = build_template_map(context, templates, self.plugins)
        result = BuildResult(output_dir=output_dir, full=full)
        for directory, source in template_map.sources.items():
            result.templates[source] = directory in template_map.changed

        live: dict[str, str] = {path: "" for path in candidates}
        for path in candidates:
            if path in result.statuses or path not in live:
                continue
            if self.claims(path):
                self._process(context, path, live, result)

        for path in pass_through:
            if path not in result.statuses:
                self._copy(path, result)
        for path in candidates:
            if path in result.statuses:
                continue
            if has_extension(path, self.config.ignore_extensions):
                result.mark(path, FileStatus.SKIPPED)
                logger.debug("Ignored %s (source only)", path)
            else:
                self._copy(path, result)

        logger.info(
            "Built %s: %d written, %d copied, %d removed, %d up to date",
            output_dir,
            len(result.written),
            len(result.copied),
            len(result.removed),
            len(result.skipped),
        )
        return result

    def _process(
        self,
        context: BuildContext,
        path: str,
        live: dict[str, str],
        result: BuildResult,
    ) -> None:
        """Thread one file through the plugin chain and write the result."""
        context.template_for(path)
        forced = context.template_map.is_changed_for(path)
        predicted = self.predict_output(path)
        source = self.config.input / path
        try:
            if not forced and predicted is not None and not self._is_stale(
                context, path, predicted
            ):
                result.mark(path, FileStatus.SKIPPED)
                logger.debug("Up to date %s", path)
                return
            live[path] = source.read_text(encoding="utf-8")
        except FileNotFoundError:
            del live[path]
            result.mark(path, FileStatus.SKIPPED)
            logger.debug("Vanished %s", path)
            return
        except (OSError, UnicodeDecodeError) as exc:
            raise BuildError(source, format_error_message(exc), exc) from exc

        current = path
        for plugin in self.plugins:
            if current not in live:
                break
            if not has_extension(current, plugin.extensions):
                continue
            action = call_plugin(plugin, context, current, live[current], source=path)
            for step in flatten(action):
                if current not in live:
                    break
                if isinstance(step, Unchanged):
                    live[current] = step.content
                elif isinstance(step, Rename):
                    current = self._rename(path, current, step, live)
                elif isinstance(step, Remove):
                    target = step.path or current
                    if target == current:
                        del live[current]
                    else:
                        self._remove_side_effect(path, target, live, result)

        if current not in live:
            result.mark(path, FileStatus.REMOVED)
            logger.debug("Removed %s", path)
            return
        self._write(current, live[current])
        result.mark(path, FileStatus.WRITTEN, output=current)
        if current != path:
            logger.debug("Wrote %s -> %s", path, current)
        else:
            logger.debug("Wrote %s", path)

    def _identity(self, source: str, raw: str) -> str:
        identity = to_posix(raw)
        if identity in ("", ".") or identity == ".." or identity.startswith("../"):
            raise BuildError(
                self.config.input / source,
                f"Output path {raw!r} is outside the output directory",
            )
        return identity

    def _rename(self, source: str, current: str, step: Rename, live: dict[str, str]) -> str:
        new = self._identity(source, step.path)
        if new != current:
            if new in live:
                raise BuildError(
                    self.config.input / source,
                    f"Renaming {current} to {new} would overwrite another source file",
                )
            del live[current]
        live[new] = step.content
        return new

    def _remove_side_effect(
        self, source: str, target: str, live: dict[str, str], result: BuildResult
    ) -> None:
        target = self._identity(source, target)
        if target in result.statuses:
            logger.debug("Not removing %s, already %s", target, result.statuses[target].value)
            return
        live.pop(target, None)
        if (self.config.input / target).is_file():
            result.mark(target, FileStatus.REMOVED)
            logger.debug("Removed %s", target)

    def _write(self, identity: str, content: str) -> None:
        target = self.config.output / identity
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8"))

    def _copy(self, path: str, result: BuildResult) -> None:
        """Copy a file verbatim when its output is missing or older."""
        source = self.config.input / path
        target = self.config.output / path
        try:
            if not is_newer(source, target):
                result.mark(path, FileStatus.SKIPPED)
                logger.debug("Up to date %s", path)
                return
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except FileNotFoundError:
            result.mark(path, FileStatus.SKIPPED)
            logger.debug("Vanished %s", path)
            return
        except OSError as exc:
            raise BuildError(source, format_error_message(exc), exc) from exc
        result.mark(path, FileStatus.COPIED, output=path)
        logger.debug("Copied %s", path)

    def remove_output(self, path: str) -> list[Path]:
        """Remove the outputs derived from a deleted input file.

        Both the mirrored path and the identity the plugin chain would have
        produced (``page.md`` -> ``page.html``) are removed.

        Args:
            path: Input-relative path of the deleted file.

        Returns:
            Output paths that were removed.
        """
        identities = {path}
        if self.claims(path):
            predicted = self.predict_output(path)
            if predicted is not None:
                identities.add(predicted)
        removed = []
        for identity in sorted(identities):
            target = self.config.output / identity
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
            else:
                continue
            removed.append(target)
            logger.info("Removed %s", target)
        return removed


def build_site(
    config: BuildConfig,
    full: bool = True,
    plugins: Sequence[Plugin] | None = None,
    compilers: CompilerRegistry | None = None,
    extra_plugins: Sequence[Plugin] = (),
) -> BuildResult:
    """Build the site once.

    Args:
        config: Project configuration.
        full: Wipe the output directory before building.
        plugins: Complete plugin chain override.
        compilers: Compiler table override.
        extra_plugins: Plugins run ahead of the built-in chain.

    Returns:
        BuildResult of the run.
    """
    builder = Builder(
        config, plugins=plugins, compilers=compilers, extra_plugins=extra_plugins
    )
    return builder.run(full=full)
