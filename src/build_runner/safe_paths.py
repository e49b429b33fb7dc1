"""Project-scoped path resolution for file commands.

Every file operation the broker can request resolves its target through
:func:`resolve_project_path`. Nothing touches the filesystem before the
resolved path has been confirmed to sit inside the project root.
"""

from pathlib import Path
from typing import Optional, Tuple, Union

from .errors import PathEscapeError


def is_within(root: Path, target: Path) -> bool:
    try:
        target.relative_to(root)
        return True
    except ValueError:
        return False


def resolve_project_root(workspace_root: Path, slug: str) -> Path:
    """Return ``workspace_root/slug`` resolved, rejecting slugs that escape it.

    Examples:
        >>> resolve_project_root(Path("/ws"), "my-app")
        PosixPath('/ws/my-app')

        >>> resolve_project_root(Path("/ws"), "../etc")
        PathEscapeError: Invalid project slug - outside workspace
    """
    if not slug or not slug.strip() or "\x00" in slug:
        raise PathEscapeError("Invalid project slug: empty", path=slug)
    workspace = workspace_root.expanduser().resolve()
    project_root = (workspace / slug).resolve()
    if project_root == workspace or not is_within(workspace, project_root):
        raise PathEscapeError("Invalid project slug - outside workspace", path=slug)
    return project_root


def resolve_project_path(
    workspace_root: Path,
    slug: str,
    relative: Optional[Union[str, Path]] = None,
) -> Tuple[Path, Path]:
    """Resolve ``relative`` under the project root for ``slug``.

    Returns ``(project_root, target)``. Symlinks are followed before the
    containment check, so a link pointing outside the project is rejected too.

    Raises:
        PathEscapeError: if the resolved target is outside the project root.
    """
    project_root = resolve_project_root(workspace_root, slug)
    if relative is None or str(relative).strip() in ("", "."):
        return project_root, project_root
    raw = str(relative)
    if "\x00" in raw:
        raise PathEscapeError("Invalid file path: NUL byte", path=raw)
    target = (project_root / raw.replace("\\", "/")).resolve()
    if not is_within(project_root, target):
        raise PathEscapeError(
            "Invalid file path - outside project directory", path=raw
        )
    return project_root, target


__all__ = ["is_within", "resolve_project_path", "resolve_project_root"]
