"""Plugin results for Plinth.

A plugin's ``parse`` returns one of the actions below. The orchestrator
matches on the action type instead of guessing from the shape of the
returned value.

Key classes:
- Unchanged: New content for the same file identity.
- Rename: New identity and content; the old identity is retired.
- Remove: Drop an identity from the output set.
- Batch: One content update plus side-effect removals.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from .errors import BuildError, ConfigError, format_error_message

if TYPE_CHECKING:
    from .context import BuildContext
    from .protocols import Plugin


@dataclass(frozen=True)
class Unchanged:
    """Content transformed in place; the file keeps its identity."""

    content: str


@dataclass(frozen=True)
class Rename:
    """The file continues under a new input-relative identity.

    Attributes:
        path: New input-relative POSIX path.
        content: Content of the file under its new identity.
    """

    path: str
    content: str


@dataclass(frozen=True)
class Remove:
    """Drop a file from the output set.

    Attributes:
        path: Input-relative path to drop. ``None`` means the file being parsed.
    """

    path: str | None = None


@dataclass(frozen=True)
class Batch:
    """Several actions produced by a single parse call.

    At most one entry may update content (``Unchanged`` or ``Rename``);
    the rest are side-effect removals.
    """

    actions: tuple[Action, ...]

    def __post_init__(self) -> None:
        updates = [a for a in self.actions if isinstance(a, (Unchanged, Rename))]
        if len(updates) > 1:
            raise ValueError("Batch may hold at most one content update")
        for action in self.actions:
            if isinstance(action, Batch):
                raise ValueError("Batch actions cannot be nested")


Action = Union[Unchanged, Rename, Remove, Batch]


def normalize(result: Action | str | list | tuple) -> Action:
    """Coerce the short forms a plugin may return into an Action.

    Args:
        result: An Action, a plain content string, or a list of actions
            and strings.

    Returns:
        The equivalent Action.

    Raises:
        TypeError: If ``result`` is not a recognised plugin result.
    """
    if isinstance(result, (Unchanged, Rename, Remove, Batch)):
        return result
    if isinstance(result, str):
        return Unchanged(result)
    if isinstance(result, (list, tuple)):
        return Batch(tuple(normalize(item) for item in result))
    raise TypeError(f"Unsupported plugin result: {type(result).__name__}")


def flatten(action: Action) -> list[Action]:
    """Return the individual actions contained in ``action``."""
    if isinstance(action, Batch):
        return list(action.actions)
    return [action]


def call_plugin(
    plugin: Plugin,
    context: BuildContext,
    path: str,
    content: str,
    source: str | None = None,
) -> Action:
    """Run one plugin on one file and normalize its result.

    Failures are re-raised as BuildError carrying the input path, so the
    user sees which file broke which plugin.

    Args:
        plugin: Plugin to run.
        context: Per-run build context.
        path: Current input-relative identity of the file.
        content: Current content of the file.
        source: Original identity of the file, reported on failure
            (defaults to ``path``).

    Returns:
        The plugin's result as an Action.

    Raises:
        BuildError: If the plugin (or a compiler it calls) fails.
    """
    try:
        return normalize(plugin.parse(context, path, content))
    except (BuildError, ConfigError):
        raise
    except Exception as exc:
        name = getattr(plugin, "name", type(plugin).__name__)
        raise BuildError(
            context.input_path(source or path),
            f"[{name}] {format_error_message(exc)}",
            exc,
        ) from exc
