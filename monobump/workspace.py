"""Workspace discovery.

Detects what kind of JavaScript workspace lives at a root directory
(npm, yarn, pnpm or bun workspaces, or a single package), expands the
declared member patterns and reads every member's package.json.
"""

from __future__ import annotations

import glob
import logging
from enum import Enum
from pathlib import Path, PurePosixPath

import yaml

from .errors import ManifestNotFoundError, WorkspaceInconsistentError, WorkspaceNotFoundError
from .manifest import MANIFEST_NAME, load_manifest, read_package
from .models import Package

logger = logging.getLogger(__name__)

PNPM_WORKSPACE_FILE = "pnpm-workspace.yaml"


class WorkspaceKind(str, Enum):
    SINGLE = "single"
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"
    BUN = "bun"


# Checked in order; the first lock file found decides the package manager.
LOCK_FILES: list[tuple[str, WorkspaceKind]] = [
    ("pnpm-lock.yaml", WorkspaceKind.PNPM),
    ("bun.lockb", WorkspaceKind.BUN),
    ("bun.lock", WorkspaceKind.BUN),
    ("yarn.lock", WorkspaceKind.YARN),
    ("package-lock.json", WorkspaceKind.NPM),
    ("npm-shrinkwrap.json", WorkspaceKind.NPM),
]


def detect_package_manager(root: Path, root_doc: dict) -> WorkspaceKind:
    """Guess the package manager from ``packageManager``, then lock files."""
    declared = root_doc.get("packageManager")
    if isinstance(declared, str):
        tool = declared.split("@", 1)[0]
        for kind in WorkspaceKind:
            if kind.value == tool:
                return kind
    if (root / PNPM_WORKSPACE_FILE).exists():
        return WorkspaceKind.PNPM
    for lock_file, kind in LOCK_FILES:
        if (root / lock_file).exists():
            return kind
    return WorkspaceKind.NPM


def get_workspace_patterns(root: Path, root_doc: dict) -> list[str] | None:
    """Extract workspace member glob patterns.

    Reads ``pnpm-workspace.yaml`` ``packages`` when present, otherwise the
    root manifest's ``workspaces`` field (either a list, or yarn's
    ``{"packages": [...]}`` form).

    Returns:
        The patterns, or None when the root is not a monorepo.
    """
    pnpm_file = root / PNPM_WORKSPACE_FILE
    if pnpm_file.exists():
        data = yaml.safe_load(pnpm_file.read_text(encoding="utf-8")) or {}
        return [str(p) for p in data.get("packages", []) or []]

    workspaces = root_doc.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if isinstance(workspaces, list):
        return [str(p) for p in workspaces]
    return None


def expand_patterns(root: Path, patterns: list[str]) -> list[Path]:
    """Expand member globs into package directories containing a manifest.

    Patterns starting with ``!`` exclude matches. ``node_modules`` is
    never searched.
    """
    include = [p for p in patterns if not p.startswith("!")]
    exclude = [p[1:] for p in patterns if p.startswith("!")]

    excluded: set[Path] = set()
    for pattern in exclude:
        for match in glob.glob(str(root / pattern.rstrip("/")), recursive=True):
            excluded.add(Path(match).resolve())

    dirs: list[Path] = []
    seen: set[Path] = set()
    for pattern in include:
        for match in sorted(glob.glob(str(root / pattern.rstrip("/")), recursive=True)):
            p = Path(match)
            resolved = p.resolve()
            if "node_modules" in p.parts or resolved in seen or resolved in excluded:
                continue
            if p.is_dir() and (p / MANIFEST_NAME).exists():
                seen.add(resolved)
                dirs.append(p)
    return dirs


def _check_requirements(packages: list[Package], *, monorepo: bool) -> None:
    for pkg in packages:
        for dep in pkg.dependencies:
            dep.parsed().check_context(monorepo=monorepo)


class Workspace:
    """The set of packages sharing a root directory.

    Build with :meth:`discover`; the instance is not modified afterwards
    (use :meth:`refresh` to re-read the disk).
    """

    def __init__(
        self,
        root: Path,
        kind: WorkspaceKind,
        packages: list[Package],
        root_package: Package | None = None,
    ) -> None:
        self._root = root
        self._kind = kind
        by_name: dict[str, Package] = {}
        for pkg in packages:
            if pkg.name in by_name:
                raise WorkspaceInconsistentError(
                    f"Duplicate package name {pkg.name!r} at "
                    f"{by_name[pkg.name].path} and {pkg.path}"
                )
            by_name[pkg.name] = pkg
        self._packages = dict(sorted(by_name.items()))
        self._root_package = root_package

    @classmethod
    def discover(cls, root: Path) -> Workspace:
        """Scan ``root`` and discover all packages.

        Raises:
            WorkspaceNotFoundError: If ``root`` has no package.json.
            WorkspaceInconsistentError: If two packages share a name.
            InvalidRequirementError: If a single package uses the
                workspace protocol.
        """
        root = Path(root).resolve()
        try:
            root_doc = load_manifest(root / MANIFEST_NAME)
        except ManifestNotFoundError as e:
            raise WorkspaceNotFoundError(
                f"No {MANIFEST_NAME} found at workspace root {root}", path=root
            ) from e

        patterns = get_workspace_patterns(root, root_doc)
        if patterns is None:
            pkg = read_package(root, root)
            _check_requirements([pkg], monorepo=False)
            logger.debug("Single-package workspace: %s %s", pkg.name, pkg.version)
            return cls(root, WorkspaceKind.SINGLE, [pkg], root_package=pkg)

        kind = detect_package_manager(root, root_doc)
        packages = [read_package(d, root) for d in expand_patterns(root, patterns)]
        if not packages:
            logger.warning("No packages found matching workspace patterns %s", patterns)

        root_package = None
        if isinstance(root_doc.get("name"), str) and root_doc["name"]:
            root_package = read_package(root, root)
            packages.append(root_package)

        _check_requirements(packages, monorepo=True)
        for pkg in packages:
            logger.debug("Discovered %s %s (%s)", pkg.name, pkg.version, pkg.path)
        return cls(root, kind, packages, root_package=root_package)

    def refresh(self) -> Workspace:
        return Workspace.discover(self._root)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def root_package(self) -> Package | None:
        return self._root_package

    def kind(self) -> WorkspaceKind:
        return self._kind

    def is_monorepo(self) -> bool:
        return self._kind is not WorkspaceKind.SINGLE

    def packages(self) -> list[Package]:
        """All packages, sorted by name."""
        return list(self._packages.values())

    def names(self) -> set[str]:
        return set(self._packages)

    def get(self, name: str) -> Package | None:
        return self._packages.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._packages

    def package_dir(self, package: Package) -> Path:
        return self._root / package.path

    def package_for_path(self, path: str | Path) -> Package | None:
        """Find the package owning ``path`` by longest directory prefix.

        ``path`` may be absolute or relative to the workspace root. Paths
        outside the root match nothing; paths under the root that are not
        inside any member match the root package, if there is one.
        """
        rel = self._relative(path)
        if rel is None:
            return None
        best: Package | None = None
        best_len = -1
        for pkg in self._packages.values():
            if pkg.is_root:
                prefix_len = 0
            elif rel == pkg.path or rel.startswith(pkg.path.rstrip("/") + "/"):
                prefix_len = len(PurePosixPath(pkg.path).parts)
            else:
                continue
            if prefix_len > best_len:
                best, best_len = pkg, prefix_len
        return best

    def _relative(self, path: str | Path) -> str | None:
        p = Path(path)
        if p.is_absolute():
            try:
                p = p.resolve().relative_to(self._root)
            except ValueError:
                return None
        rel = PurePosixPath(p.as_posix())
        if rel.parts and rel.parts[0] == "..":
            return None
        text = str(rel)
        return text[2:] if text.startswith("./") else text

    def __repr__(self) -> str:
        return f"Workspace(root={str(self._root)!r}, kind={self._kind.value}, packages={len(self._packages)})"
