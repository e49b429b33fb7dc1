from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# checked in order; astro and next both pull in other bundlers
_FRAMEWORK_PORTS = (
    ("next", "next", 3000),
    ("astro", "astro", 4321),
    ("vite", "vite", 5173),
)
_DEFAULT_PORT = 3000
_LOCKFILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("package-lock.json", "npm"),
)
_KNOWN_MANAGERS = ("npm", "pnpm", "yarn", "bun")


@dataclass(frozen=True)
class RunCommand:
    command: str
    project_type: str
    port: int

    def metadata(self, project_dir: Path) -> Dict[str, Any]:
        return {
            "path": str(project_dir),
            "projectType": self.project_type,
            "runCommand": self.command,
            "port": self.port,
        }


def detect_package_manager(project_dir: Path, manifest: Dict[str, Any]) -> str:
    declared = manifest.get("packageManager")
    if isinstance(declared, str) and declared:
        name = declared.split("@", 1)[0].strip().lower()
        if name in _KNOWN_MANAGERS:
            return name
    for lockfile, manager in _LOCKFILES:
        if (project_dir / lockfile).exists():
            return manager
    return "npm"


def _script_command(manager: str, script: str) -> str:
    if script == "start" and manager != "bun":
        return f"{manager} start"
    return f"{manager} run {script}"


def _framework(manifest: Dict[str, Any]) -> tuple:
    deps: Dict[str, Any] = {}
    for key in ("dependencies", "devDependencies"):
        section = manifest.get(key)
        if isinstance(section, dict):
            deps.update(section)
    for package, project_type, port in _FRAMEWORK_PORTS:
        if package in deps:
            return project_type, port
    return "unknown", _DEFAULT_PORT


def detect_run_command(project_dir: Path) -> Optional[RunCommand]:
    """Inspect ``package.json``; ``None`` when there is nothing runnable.

    Raises:
        OSError, ValueError: if the manifest exists but cannot be read or parsed.
    """
    manifest_path = project_dir / "package.json"
    if not manifest_path.is_file():
        return None
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    if not isinstance(manifest, dict):
        return None
    scripts = manifest.get("scripts")
    if not isinstance(scripts, dict):
        return None
    manager = detect_package_manager(project_dir, manifest)
    for script in ("dev", "start"):
        if scripts.get(script):
            project_type, port = _framework(manifest)
            return RunCommand(_script_command(manager, script), project_type, port)
    return None


__all__ = ["RunCommand", "detect_package_manager", "detect_run_command"]
