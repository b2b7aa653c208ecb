"""Per-run build context for Plinth.

A BuildContext is created at the start of every build (including each
watch-triggered rebuild) and dropped when the run ends. It owns every cache
the pipeline uses, so nothing leaks from one run into the next.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .compilers import CompilerRegistry
from .config import BuildConfig
from .protocols import CompileResult, Compiler
from .templates import TemplateMap
from .utils import STYLE_EXTENSIONS, extension_of, is_partial, replace_extension


@dataclass
class BuildContext:
    """Shared state for one build run.

    Attributes:
        config: Project configuration.
        compilers: Compiler table the plugins draw from.
        template_map: Resolved templates per directory.
        bust_memo: Cache-busting tokens keyed by resolved input-relative path.
        generated: Bytes compiled during this run, keyed by the identity they
            will be written under (e.g. ``css/site.css`` for ``css/site.scss``).
        compile_memo: Compiler results keyed by (compiler name, input path).
        files: Every input-relative path discovered for this run.
    """

    config: BuildConfig
    compilers: CompilerRegistry
    template_map: TemplateMap = field(default_factory=TemplateMap)
    bust_memo: dict[str, str] = field(default_factory=dict)
    generated: dict[str, bytes] = field(default_factory=dict)
    compile_memo: dict[tuple[str, str], CompileResult] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)

    def input_path(self, path: str) -> Path:
        """Absolute path of an input-relative identity."""
        return self.config.input / path

    def output_path(self, path: str) -> Path:
        """Absolute output path mirroring an input-relative identity."""
        return self.config.output / path

    def read_source(self, path: str) -> str:
        """Read an input file as UTF-8 text."""
        return self.input_path(path).read_text(encoding="utf-8")

    def compiler(self, name: str) -> Compiler:
        """Look up a compiler by name."""
        return self.compilers.get(name)

    def compile(
        self,
        name: str,
        path: str,
        source: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> CompileResult:
        """Compile an input file once per run.

        Args:
            name: Compiler name.
            path: Input-relative path of the source file.
            source: Source text; read from disk when omitted.
            options: Extra options merged over the configured option bag.

        Returns:
            The (possibly memoized) CompileResult.
        """
        key = (name, path)
        if key not in self.compile_memo:
            text = self.read_source(path) if source is None else source
            merged = {**self.config.compiler_options(name), **(options or {})}
            self.compile_memo[key] = self.compiler(name).compile(text, merged)
        return self.compile_memo[key]

    def template_for(self, path: str) -> str:
        """Return the rendered template governing ``path``."""
        return self.template_map.template_for(path, self.config.template)

    def compile_style(self, path: str, source: str | None = None) -> str:
        """Compile a style source once per run and register its CSS bytes.

        The directory of ``path`` is searched for imports before the
        configured ``load_paths``.

        Args:
            path: Input-relative path of the ``.scss`` / ``.sass`` file.
            source: Source text; read from disk when omitted.

        Returns:
            Compiled CSS.

        Raises:
            CompileError: If the stylesheet does not compile.
        """
        configured = self.config.compiler_options("sass").get("load_paths", ())
        load_paths = [str(self.input_path(path).parent)]
        load_paths.extend(str(self.config.root / p) for p in configured)
        result = self.compile(
            "sass",
            path,
            source,
            options={
                "load_paths": load_paths,
                "indented": extension_of(path) == ".sass",
            },
        )
        self.generated[replace_extension(path, ".css")] = result.output.encode("utf-8")
        return result.output

    def style_source_for(self, css_path: str) -> str | None:
        """Find the style source compiled into ``css_path``, if there is one."""
        if extension_of(css_path) != ".css":
            return None
        for ext in sorted(STYLE_EXTENSIONS, reverse=True):
            candidate = replace_extension(css_path, ext)
            if not is_partial(candidate) and self.input_path(candidate).is_file():
                return candidate
        return None
