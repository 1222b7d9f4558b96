"""Tests for smartaudit.core.paths — repo root resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from smartaudit.core.errors import RepoRootNotFound
from smartaudit.core.paths import anchor, find_repo_root


def test_find_repo_root_from_root(tmp_path: Path) -> None:
    """When cwd IS the root, return it."""
    (tmp_path / "pyproject.toml").touch()
    assert find_repo_root(start=tmp_path) == tmp_path.resolve()


def test_find_repo_root_from_subdirectory(tmp_path: Path) -> None:
    """Walking up from a deep subdirectory must find the marker."""
    (tmp_path / "pyproject.toml").touch()
    deep = tmp_path / "src" / "smartaudit" / "core"
    deep.mkdir(parents=True)
    assert find_repo_root(start=deep) == tmp_path.resolve()


def test_find_repo_root_from_clone_workspace(tmp_path: Path) -> None:
    """Simulates running `smartaudit` from inside a cloned repository."""
    (tmp_path / "pyproject.toml").touch()
    clone = tmp_path / "workspace" / "clones" / "vault-1700000000000"
    clone.mkdir(parents=True)
    assert find_repo_root(start=clone) == tmp_path.resolve()


def test_find_repo_root_raises_when_missing(tmp_path: Path) -> None:
    """No pyproject.toml anywhere → RepoRootNotFound."""
    isolated = tmp_path / "no_marker_here"
    isolated.mkdir()
    with pytest.raises(RepoRootNotFound):
        find_repo_root(start=isolated)


def test_find_repo_root_ignores_marker_directory(tmp_path: Path) -> None:
    """A directory named pyproject.toml is not a marker."""
    isolated = tmp_path / "proj"
    (isolated / "pyproject.toml").mkdir(parents=True)
    with pytest.raises(RepoRootNotFound):
        find_repo_root(start=isolated)


def test_find_repo_root_resolved_is_absolute(tmp_path: Path) -> None:
    """Result is always an absolute, resolved path."""
    (tmp_path / "pyproject.toml").touch()
    result = find_repo_root(start=tmp_path)
    assert result.is_absolute()
    assert result == result.resolve()


def test_anchor_relative_and_absolute(tmp_path: Path) -> None:
    assert anchor(Path("rules.yaml"), tmp_path) == (tmp_path / "rules.yaml").resolve()
    absolute = tmp_path / "elsewhere" / "rules.yaml"
    assert anchor(absolute, Path("/unused")) == absolute
