"""package.json reading and writing.

The reader turns a manifest into a :class:`~monobump.models.Package`. The
writer only touches the ``version`` field and the dependency specifiers it
is told to rewrite: every other key keeps its value and position, and the
original indentation and trailing newline are kept.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from .errors import (
    AtomicWriteFailedError,
    ManifestNotFoundError,
    ManifestParseError,
    ManifestWriteError,
    NameMissingError,
    VersionInvalidError,
)
from .fs import relative_posix, write_text_atomic
from .models import MANIFEST_SECTIONS, Dependency, Package
from .versions import is_valid_version

MANIFEST_NAME = "package.json"

_INDENT_RE = re.compile(r"^(?P<indent>[ \t]+)\S", re.MULTILINE)


def load_manifest(path: Path) -> dict[str, Any]:
    """Load and parse a package.json file.

    Raises:
        ManifestNotFoundError: If the file does not exist.
        ManifestParseError: If it is not a JSON object.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestNotFoundError(path) from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManifestParseError(f"Invalid JSON in {path}: {e}", path=path) from e
    if not isinstance(data, dict):
        raise ManifestParseError(f"Manifest is not a JSON object: {path}", path=path)
    return data


def detect_indent(text: str) -> str | int:
    """Indentation used by a JSON document (defaults to two spaces)."""
    match = _INDENT_RE.search(text)
    if not match:
        return 2
    indent = match.group("indent")
    return indent if "\t" in indent else len(indent)


def dump_manifest(data: dict[str, Any], like: str | None = None) -> str:
    """Serialize a manifest, matching the formatting of ``like`` if given."""
    indent = detect_indent(like) if like else 2
    text = json.dumps(data, indent=indent, ensure_ascii=False)
    if like is None or like.endswith("\n"):
        text += "\n"
    return text


def get_dependencies(doc: dict[str, Any]) -> list[Dependency]:
    """Collect dependency edges from every dependency section.

    Gathers from ``dependencies``, ``devDependencies``,
    ``peerDependencies`` and ``optionalDependencies``, in that order.
    """
    deps: list[Dependency] = []
    for key, kind in MANIFEST_SECTIONS.items():
        section = doc.get(key) or {}
        if not isinstance(section, dict):
            continue
        for name, spec in section.items():
            deps.append(Dependency.from_spec(name, str(spec), kind))
    return deps


def read_package(package_dir: Path, root: Path, *, require_name: bool = True) -> Package:
    """Build a :class:`Package` from the manifest in ``package_dir``.

    Args:
        package_dir: Directory containing package.json.
        root: Workspace root, used to compute the relative package path.
        require_name: When False, a missing name falls back to the
            directory name (used for private workspace roots).

    Raises:
        ManifestNotFoundError, ManifestParseError, NameMissingError,
        VersionInvalidError
    """
    manifest_path = package_dir / MANIFEST_NAME
    doc = load_manifest(manifest_path)

    name = doc.get("name")
    if not isinstance(name, str) or not name:
        if require_name:
            raise NameMissingError(manifest_path)
        name = package_dir.resolve().name

    version = doc.get("version", "0.0.0")
    if not isinstance(version, str) or not is_valid_version(version):
        raise VersionInvalidError(
            f"Invalid version {version!r} in {manifest_path}", path=manifest_path
        )

    return Package(
        name=name,
        version=version,
        path=relative_posix(package_dir, root),
        dependencies=get_dependencies(doc),
        private=bool(doc.get("private", False)),
    )


def write_package(
    package_dir: Path,
    new_version: str | None = None,
    requirements: dict[str, str] | None = None,
) -> Path:
    """Update a package's version and rewrite selected dependency specifiers.

    Specifiers are rewritten in every dependency section that declares the
    dependency. Uses an atomic replace.

    Args:
        package_dir: Directory containing package.json.
        new_version: New version string to set, or None to keep it.
        requirements: Map of dependency name → new specifier.

    Returns:
        Path to the updated manifest.

    Raises:
        ManifestWriteError: If the manifest cannot be written.
    """
    manifest_path = package_dir / MANIFEST_NAME
    original = manifest_path.read_text(encoding="utf-8") if manifest_path.exists() else None
    if original is None:
        raise ManifestNotFoundError(manifest_path)
    doc = load_manifest(manifest_path)

    if new_version is not None:
        doc["version"] = new_version

    for key in MANIFEST_SECTIONS:
        section = doc.get(key)
        if not isinstance(section, dict):
            continue
        for name, spec in (requirements or {}).items():
            if name in section:
                section[name] = spec

    try:
        write_text_atomic(manifest_path, dump_manifest(doc, like=original))
    except AtomicWriteFailedError as e:
        raise ManifestWriteError(e.message, path=manifest_path) from e
    return manifest_path
