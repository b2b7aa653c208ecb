"""Protocol definitions for Plinth.

This module defines the two seams of the build pipeline: content plugins
and the external compilers they call. The orchestrator only depends on
these interfaces, so both can be swapped or extended from configuration.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .actions import Action
    from .context import BuildContext


@dataclass
class CompileResult:
    """Output of an external compiler.

    Attributes:
        output: Rendered output text.
        artifacts: Auxiliary outputs (metadata, headings, source maps).
    """

    output: str
    artifacts: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Compiler(Protocol):
    """Protocol for external format compilers.

    Implementations wrap an off-the-shelf engine (Markdown, Jinja, Sass).
    """

    @abstractmethod
    def compile(self, source: str, options: Mapping[str, Any]) -> CompileResult:
        """Compile source text.

        Args:
            source: Source text to compile.
            options: Opaque option bag from the project configuration.

        Returns:
            CompileResult with the rendered output.

        Raises:
            CompileError: If the source cannot be compiled.
        """
        ...


@runtime_checkable
class Plugin(Protocol):
    """Protocol for content plugins.

    A plugin claims files by extension. The orchestrator only calls
    ``parse`` for files whose *current* extension is in ``extensions``.
    A plugin may also define ``dependencies(context, path)`` returning the
    input files (such as shared partials) whose changes make ``path`` stale.
    """

    name: str
    extensions: frozenset[str]
    applies_to_templates: bool

    @abstractmethod
    def parse(
        self, context: BuildContext, path: str, content: str
    ) -> Action | str | list:
        """Transform one file.

        Args:
            context: The per-run build context.
            path: Current input-relative identity of the file.
            content: Current content of the file.

        Returns:
            An Action, or a plain string / list of actions as shorthand.
        """
        ...

    @abstractmethod
    def target(self, path: str) -> str | None:
        """Predict the identity this plugin gives ``path``.

        Returns:
            The new identity, ``path`` itself when unchanged, or None when the
            plugin removes the file.
        """
        ...
