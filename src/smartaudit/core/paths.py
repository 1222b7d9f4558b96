"""Project root resolver.

Clones, reports and the optional pattern-rules file are all anchored at
the project root, so ``smartaudit`` behaves the same whether it is run
from the root, from ``reports/`` or from inside a cloned workspace.

The root is the first directory, walking upward from *start*, that holds
a ``pyproject.toml``.
"""

from __future__ import annotations

from pathlib import Path

from smartaudit.core.errors import RepoRootNotFound

_MARKER = "pyproject.toml"


def find_repo_root(start: Path | None = None) -> Path:
    """Return the absolute project root.

    Raises
    ------
    RepoRootNotFound
        If no ``pyproject.toml`` is found in *start* or any of its parents.
    """
    origin = (start or Path.cwd()).resolve()
    for candidate in [origin, *origin.parents]:
        if (candidate / _MARKER).is_file():
            return candidate
    raise RepoRootNotFound(start_path=str(origin))


def anchor(path: Path, root: Path) -> Path:
    """Resolve *path* against *root* unless it is already absolute."""
    return path if path.is_absolute() else (root / path).resolve()
