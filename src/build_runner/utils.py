import os
import shutil
from pathlib import Path
from typing import Dict, Mapping, Optional


def _default_path_prefixes() -> list[str]:
    """
    Service managers often start the runner with a minimal PATH that misses
    where node toolchains and agent CLIs are usually installed.
    """
    home = Path.home()
    candidates = [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        str(home / ".local" / "bin"),
        str(home / ".bun" / "bin"),
        str(home / ".npm-global" / "bin"),
        str(home / ".volta" / "bin"),
    ]
    return [p for p in candidates if os.path.isdir(p)]


def augmented_path(path: Optional[str] = None) -> str:
    prefixes = _default_path_prefixes()
    existing = [p for p in (path or "").split(os.pathsep) if p]
    merged: list[str] = []
    for p in prefixes + existing:
        if p and p not in merged:
            merged.append(p)
    return os.pathsep.join(merged)


def subprocess_env(
    extra: Optional[Mapping[str, str]] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    env = dict(base_env) if base_env is not None else dict(os.environ)
    if extra:
        env.update({k: str(v) for k, v in extra.items()})
    env["PATH"] = augmented_path(env.get("PATH"))
    return env


def resolve_executable(
    binary: str, *, env: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Resolve an executable path in a way that's resilient to minimal PATHs.
    Returns an absolute path if found, else None.
    """
    if not binary:
        return None
    if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
        candidate = Path(binary).expanduser()
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
        return None

    resolved = shutil.which(binary)
    if resolved:
        return resolved
    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    return shutil.which(binary, path=augmented_path(path))


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        f.write(content)
    tmp_path.replace(path)


def join_prompt_segments(*segments: Optional[str]) -> str:
    return "\n\n".join(s.strip() for s in segments if s and s.strip())


__all__ = [
    "atomic_write",
    "augmented_path",
    "join_prompt_segments",
    "resolve_executable",
    "subprocess_env",
]
