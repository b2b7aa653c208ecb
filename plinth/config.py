"""Project configuration for Plinth.

Configuration lives in ``plinth.yaml`` at the project root. Values missing
from the file fall back to ``DEFAULT_CONFIG``; keyword overrides (from the
CLI) take precedence over the file.

Key objects:
- BuildConfig: Validated, immutable configuration for one project.
- load_config: Read ``plinth.yaml`` and merge defaults and overrides.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

CONFIG_FILENAME = "plinth.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "input": "src",
    "output": "build",
    "template": "template.html",
    "html_extensions": [".html", ".htm"],
    "ignore_extensions": [".sass", ".scss", ".less"],
    "pass_through": [],
    "compilers": {},
    "plugins": [],
    "minify_js": False,
    "verbose": False,
    "port": 4000,
    "ws_port": None,
}


def _normalize_extensions(values: Any, key: str) -> frozenset[str]:
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ConfigError(f"'{key}' must be a list of extensions")
    normalized = set()
    for value in values:
        ext = str(value).strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith(".") else f".{ext}")
    return frozenset(normalized)


@dataclass(frozen=True)
class BuildConfig:
    """Configuration for a build.

    Attributes:
        root: Project root; relative input/output paths resolve against it.
        input: Input root directory.
        output: Output root directory.
        template: File name that defines a directory's page template.
        html_extensions: Extensions treated as HTML pages.
        ignore_extensions: Source-only extensions never copied verbatim.
        pass_through: Glob patterns of files copied untouched.
        compilers: Per-compiler option bags, passed through opaquely.
        plugins: Import strings of user plugins, run before the built-ins.
        minify_js: Whether to minify ``.js`` files.
        verbose: Whether to log every build action.
        port: Dev server HTTP port.
        ws_port: Dev server live reload port (defaults to ``port + 1``).
    """

    root: Path
    input: Path
    output: Path
    template: str = "template.html"
    html_extensions: frozenset[str] = frozenset({".html", ".htm"})
    ignore_extensions: frozenset[str] = frozenset({".sass", ".scss", ".less"})
    pass_through: tuple[str, ...] = ()
    compilers: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    plugins: tuple[str, ...] = ()
    minify_js: bool = False
    verbose: bool = False
    port: int = 4000
    ws_port: int | None = None

    @classmethod
    def from_dict(cls, root: Path, values: Mapping[str, Any]) -> BuildConfig:
        """Build a validated config from a plain mapping.

        Args:
            root: Project root directory.
            values: Raw configuration values (defaults already applied or not).

        Returns:
            BuildConfig with paths resolved against ``root``.

        Raises:
            ConfigError: On unknown keys or values of the wrong type.
        """
        merged = {**DEFAULT_CONFIG, **values}
        unknown = sorted(set(merged) - set(DEFAULT_CONFIG))
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        template = merged["template"]
        if not isinstance(template, str) or not template or "/" in template:
            raise ConfigError("'template' must be a bare file name")

        compilers = merged["compilers"] or {}
        if not isinstance(compilers, Mapping) or not all(
            isinstance(v, Mapping) for v in compilers.values()
        ):
            raise ConfigError("'compilers' must map compiler names to option mappings")

        pass_through = merged["pass_through"] or []
        plugins = merged["plugins"] or []
        for key, value in (("pass_through", pass_through), ("plugins", plugins)):
            if isinstance(value, str) or not isinstance(value, (list, tuple)):
                raise ConfigError(f"'{key}' must be a list of strings")

        try:
            port = int(merged["port"])
            ws_port = None if merged["ws_port"] is None else int(merged["ws_port"])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid port: {exc}") from exc

        root = Path(root)
        return cls(
            root=root,
            input=(root / str(merged["input"])),
            output=(root / str(merged["output"])),
            template=template,
            html_extensions=_normalize_extensions(
                merged["html_extensions"], "html_extensions"
            ),
            ignore_extensions=_normalize_extensions(
                merged["ignore_extensions"], "ignore_extensions"
            ),
            pass_through=tuple(str(p) for p in pass_through),
            compilers={str(k): dict(v) for k, v in compilers.items()},
            plugins=tuple(str(p) for p in plugins),
            minify_js=bool(merged["minify_js"]),
            verbose=bool(merged["verbose"]),
            port=port,
            ws_port=ws_port,
        )

    def compiler_options(self, name: str) -> Mapping[str, Any]:
        """Return the option bag configured for a compiler (empty if none)."""
        return self.compilers.get(name, {})


def read_config_file(root: Path) -> dict[str, Any]:
    """Read ``plinth.yaml`` from the project root.

    Args:
        root: Root directory of the project.

    Returns:
        Raw values from the file, or an empty dict when it does not exist.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping.
    """
    config_path = root / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid {CONFIG_FILENAME}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping")
    return loaded


def load_config(root: Path, **overrides: Any) -> BuildConfig:
    """Load the project configuration.

    Args:
        root: Root directory of the project.
        **overrides: Values that replace file values; ``None`` is ignored.

    Returns:
        Validated BuildConfig.
    """
    values = read_config_file(root)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return BuildConfig.from_dict(root, values)
