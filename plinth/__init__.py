"""Plinth incremental static site builder.

Plinth takes a source tree of pages, templates and assets, runs each file
through an ordered chain of plugins (Markdown, Jinja, Sass, cache busting,
page templating) and writes the result to an output tree, redoing only the
work whose inputs changed since the last run.

The main entry point is the CLI module, which provides commands for
building, watching and serving a site.
"""

from .actions import Batch, Remove, Rename, Unchanged
from .build import Builder, BuildResult, FileStatus, build_site
from .config import BuildConfig, load_config
from .errors import BuildError, CompileError, ConfigError, PlinthError, TemplateNotFoundError
from .plugins import BasePlugin

__all__ = [
    "__version__",
    "Batch",
    "BasePlugin",
    "BuildConfig",
    "BuildError",
    "BuildResult",
    "Builder",
    "CompileError",
    "ConfigError",
    "FileStatus",
    "PlinthError",
    "Remove",
    "Rename",
    "TemplateNotFoundError",
    "Unchanged",
    "build_site",
    "load_config",
]
__version__ = "0.1.0"
