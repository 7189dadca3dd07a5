"""Directory exclusion tiers for the directory walker.

Tier 0 (HARDCODED_DIRS): Never traversed, not user-configurable.
    - VCS internals and semindex's own index directory

Tier 1 (DEFAULT_PRUNABLE_DIRS): Excluded by default, user can override
    with ``!dirname`` in .semignore.
    - Dependencies, caches, build outputs
"""

from __future__ import annotations

# =============================================================================
# Tier 0: HARDCODED - Never traverse, not user-configurable
# =============================================================================

HARDCODED_DIRS: frozenset[str] = frozenset(
    (
        # VCS internals
        ".git",
        ".svn",
        ".hg",
        ".bzr",
        # Index data
        ".semindex",
    )
)

# =============================================================================
# Tier 1: DEFAULT_PRUNABLE - Excluded by default, user can override
# =============================================================================
# Organized by ecosystem.

DEFAULT_PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        # JavaScript/Node.js
        "node_modules",
        ".npm",
        ".yarn",
        ".pnpm-store",
        "bower_components",
        ".next",
        ".nuxt",
        ".turbo",
        # Python
        "venv",
        ".venv",
        ".virtualenv",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        ".eggs",
        "site-packages",
        ".ipynb_checkpoints",
        ".hypothesis",
        "htmlcov",
        # Ruby
        ".bundle",
        # Rust
        "target",
        # Elixir/Erlang
        "_build",
        "deps",
        # Haskell
        ".stack-work",
        # Dart/Flutter
        ".dart_tool",
        # JVM
        ".gradle",
        ".m2",
        # .NET
        "bin",
        "obj",
        # iOS/macOS
        "pods",
        "deriveddata",
        # Infrastructure
        ".terraform",
        # Generic build/output
        "dist",
        "build",
        "out",
        "coverage",
        ".nyc_output",
        # IDE/Editor
        ".idea",
        ".vscode",
        ".vs",
        # Misc caches
        ".cache",
        "vendor",
    )
)


def is_hardcoded_dir(dirname: str) -> bool:
    """Check if directory is hardcoded (never traversable, not overridable)."""
    return dirname in HARDCODED_DIRS


def is_default_prunable(dirname: str) -> bool:
    """Check if directory is prunable by default (but user can override)."""
    return dirname in DEFAULT_PRUNABLE_DIRS


__all__ = [
    "HARDCODED_DIRS",
    "DEFAULT_PRUNABLE_DIRS",
    "is_hardcoded_dir",
    "is_default_prunable",
]
