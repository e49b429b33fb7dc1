from pathlib import Path

import pytest

from build_runner.errors import PathEscapeError
from build_runner.safe_paths import resolve_project_path, resolve_project_root


def test_resolves_relative_path_inside_project(tmp_path: Path) -> None:
    root, target = resolve_project_path(tmp_path, "app", "src/index.ts")
    assert root == (tmp_path / "app").resolve()
    assert target == root / "src" / "index.ts"


def test_empty_path_is_project_root(tmp_path: Path) -> None:
    root, target = resolve_project_path(tmp_path, "app", None)
    assert target == root
    root, target = resolve_project_path(tmp_path, "app", ".")
    assert target == root


@pytest.mark.parametrize(
    "relative",
    ["../other/secret.txt", "../../etc/passwd", "/etc/passwd", "src/../../x"],
)
def test_rejects_paths_outside_project(tmp_path: Path, relative: str) -> None:
    with pytest.raises(PathEscapeError, match="outside project directory"):
        resolve_project_path(tmp_path, "app", relative)


def test_sibling_prefix_is_not_inside(tmp_path: Path) -> None:
    with pytest.raises(PathEscapeError):
        resolve_project_path(tmp_path, "app", "../app-evil/file.txt")


def test_symlink_escape_is_rejected(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    project = tmp_path / "app"
    project.mkdir()
    (project / "link").symlink_to(outside)
    with pytest.raises(PathEscapeError):
        resolve_project_path(tmp_path, "app", "link/file.txt")


@pytest.mark.parametrize("slug", ["", "  ", "..", "../x", "a/../.."])
def test_rejects_bad_slugs(tmp_path: Path, slug: str) -> None:
    with pytest.raises(PathEscapeError):
        resolve_project_root(tmp_path, slug)
