"""Data models for monobump.

These Pydantic models represent the package-level data structures shared
by the workspace, the dependency graph and the planner.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .requirements import RequirementKind, VersionRequirement


class DependencyKind(str, Enum):
    """Which manifest section declares a dependency."""

    RUNTIME = "runtime"
    DEV = "dev"
    PEER = "peer"
    OPTIONAL = "optional"

    @property
    def manifest_key(self) -> str:
        return _MANIFEST_KEYS[self]


_MANIFEST_KEYS = {
    DependencyKind.RUNTIME: "dependencies",
    DependencyKind.DEV: "devDependencies",
    DependencyKind.PEER: "peerDependencies",
    DependencyKind.OPTIONAL: "optionalDependencies",
}

MANIFEST_SECTIONS: dict[str, DependencyKind] = {v: k for k, v in _MANIFEST_KEYS.items()}


class Dependency(BaseModel):
    """A dependency edge declared by a package.

    Attributes:
        name: Name of the depended-on package.
        requirement: The specifier string as written in the manifest.
        kind: Manifest section the edge was declared in.
        source: Protocol of the specifier (semver range, workspace, git, ...).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    requirement: str
    kind: DependencyKind = DependencyKind.RUNTIME
    source: RequirementKind = RequirementKind.SEMVER

    @classmethod
    def from_spec(cls, name: str, spec: str, kind: DependencyKind) -> Dependency:
        return cls(
            name=name,
            requirement=spec,
            kind=kind,
            source=VersionRequirement.parse(spec).kind,
        )

    def parsed(self) -> VersionRequirement:
        return VersionRequirement.parse(self.requirement)


class Package(BaseModel):
    """Metadata for a single package in the workspace.

    Attributes:
        name: Package name, unique within a workspace.
        version: Current version string from package.json.
        path: Relative POSIX path from workspace root to the package
              directory ("." for the root package).
        dependencies: Every dependency edge, internal and external.
        private: Whether the manifest is marked ``"private": true``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    path: str = "."
    dependencies: list[Dependency] = Field(default_factory=list)
    private: bool = False

    @property
    def is_root(self) -> bool:
        return self.path in ("", ".")

    def dependency_names(self, kinds: set[DependencyKind] | None = None) -> list[str]:
        """Names this package depends on, optionally limited to ``kinds``."""
        seen: list[str] = []
        for dep in self.dependencies:
            if kinds is not None and dep.kind not in kinds:
                continue
            if dep.name not in seen:
                seen.append(dep.name)
        return seen

    def requirements_on(self, name: str) -> list[Dependency]:
        return [dep for dep in self.dependencies if dep.name == name]


class VersionChange(BaseModel):
    """Records a version change applied to a package manifest.

    Attributes:
        old: The version before bumping.
        new: The version after bumping.
        requirements: Dependency specifiers rewritten in the same manifest,
            as ``{dependency name: new specifier}``.
    """

    old: str
    new: str
    requirements: dict[str, str] = Field(default_factory=dict)
