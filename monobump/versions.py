"""Version parsing, bumping and snapshot utilities.

Handles conversion between version strings and semver objects, with
special handling for incomplete or prefixed version strings (e.g.,
"v1.0" → "1.0.0"). Prerelease and build metadata are preserved.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import semver

from .errors import InvalidVersionError

_VERSION_RE = re.compile(
    r"^(?P<core>\d+(?:\.\d+){0,2})"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)


class BumpKind(str, Enum):
    """A step along the semver lattice: ``none < patch < minor < major``."""

    NONE = "none"
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"

    @property
    def rank(self) -> int:
        return _BUMP_RANK[self]

    # str already defines the rich comparisons, so all four are overridden.
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, BumpKind):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, BumpKind):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, BumpKind):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, BumpKind):
            return NotImplemented
        return self.rank >= other.rank

    def __hash__(self) -> int:
        return hash(self.value)

    def __str__(self) -> str:
        return self.value


_BUMP_RANK = {BumpKind.NONE: 0, BumpKind.PATCH: 1, BumpKind.MINOR: 2, BumpKind.MAJOR: 3}


def max_bump(kinds: Iterable[BumpKind]) -> BumpKind:
    """Return the strongest bump in ``kinds`` (``NONE`` when empty)."""
    return max(kinds, default=BumpKind.NONE, key=lambda k: k.rank)


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Parsing is permissive:
    - a leading "v" or "=" is stripped ("v1.2.3" → "1.2.3")
    - incomplete versions are padded with zeros ("1.2" → "1.2.0")
    - prerelease and build metadata are kept ("1.0.0-alpha.1+build.7")

    Raises:
        InvalidVersionError: If the string is not a version.
    """
    text = version_str.strip()
    if text[:1] in ("v", "V", "="):
        text = text[1:]
    match = _VERSION_RE.match(text)
    if not match:
        raise InvalidVersionError(version_str)

    parts = match.group("core").split(".")
    # Pad with zeros to ensure we have 3 parts
    while len(parts) < 3:
        parts.append("0")
    try:
        return semver.Version(
            int(parts[0]),
            int(parts[1]),
            int(parts[2]),
            prerelease=match.group("pre"),
            build=match.group("build"),
        )
    except ValueError as e:
        raise InvalidVersionError(version_str, str(e)) from e


def is_valid_version(version_str: str) -> bool:
    try:
        parse_version(version_str)
    except InvalidVersionError:
        return False
    return True


def apply_bump(version: semver.Version, kind: BumpKind) -> semver.Version:
    """Increment ``version`` by ``kind``.

    Any bump other than ``NONE`` drops prerelease and build metadata:
    - major: 1.2.3-rc.1 → 2.0.0
    - minor: 1.2.3 → 1.3.0
    - patch: 1.2.3 → 1.2.4
    """
    if kind is BumpKind.MAJOR:
        return version.bump_major()
    if kind is BumpKind.MINOR:
        return version.bump_minor()
    if kind is BumpKind.PATCH:
        return semver.Version(version.major, version.minor, version.patch + 1)
    return version


def bump_version(version_str: str, kind: BumpKind) -> str:
    """Bump a version string and return the new version as a string.

    Examples:
        bump_version("1.2.3", BumpKind.PATCH) → "1.2.4"
        bump_version("1.0", BumpKind.MINOR) → "1.1.0"
        bump_version("v2", BumpKind.MAJOR) → "3.0.0"
    """
    return str(apply_bump(parse_version(version_str), kind))


def bump_between(current: semver.Version, target: semver.Version) -> BumpKind:
    """Classify the move from ``current`` to ``target`` as a bump kind.

    Used for strategies that set versions directly (unified, manual).
    Targets that do not move forward classify as ``NONE``.
    """
    if target.compare(current) <= 0:
        return BumpKind.NONE
    if target.major != current.major:
        return BumpKind.MAJOR
    if target.minor != current.minor:
        return BumpKind.MINOR
    return BumpKind.PATCH


def compare_versions(a: str, b: str) -> int:
    """Compare two version strings by semver precedence (build ignored)."""
    return parse_version(a).compare(parse_version(b))


@dataclass(frozen=True)
class SnapshotVersion:
    """A development version tagging a base release with a commit SHA.

    Rendered as ``{base}-0.0-{shortsha}``.
    """

    base: semver.Version
    commit: str
    hash_length: int = 7

    @classmethod
    def for_commit(
        cls, base: semver.Version | str, commit: str, hash_length: int = 7
    ) -> SnapshotVersion:
        if isinstance(base, str):
            base = parse_version(base)
        if hash_length < 4:
            raise ValueError("snapshot hash length must be at least 4")
        return cls(base=base, commit=commit, hash_length=hash_length)

    @property
    def short_sha(self) -> str:
        return self.commit[: self.hash_length]

    def __str__(self) -> str:
        return f"{self.base}-0.0-{self.short_sha}"


@dataclass(frozen=True)
class Release:
    version: semver.Version

    def __str__(self) -> str:
        return str(self.version)


@dataclass(frozen=True)
class Snapshot:
    snapshot: SnapshotVersion

    def __str__(self) -> str:
        return str(self.snapshot)


ResolvedVersion = Release | Snapshot


def _base_of(resolved: ResolvedVersion) -> semver.Version:
    if isinstance(resolved, Release):
        return resolved.version
    return resolved.snapshot.base


def compare_resolved(a: ResolvedVersion, b: ResolvedVersion) -> int | None:
    """Compare two resolved versions.

    Returns a negative, zero or positive int like ``semver.Version.compare``,
    or ``None`` when the pair is incomparable: a release and a snapshot
    sharing the same base are never equal and have no order. Any other pair
    compares by base alone, so two snapshots of one base are equal.
    """
    base_cmp = _base_of(a).compare(_base_of(b))
    if base_cmp != 0:
        return base_cmp
    if type(a) is not type(b):
        return None
    return 0


def resolve_version(
    version: semver.Version | str,
    *,
    branch: str,
    commit: str,
    release_branches: Iterable[str] = ("main", "master", "develop"),
    allow_snapshot_on_main: bool = False,
    hash_length: int = 7,
    snapshot: bool = True,
) -> ResolvedVersion:
    """Decide whether ``version`` is published as a release or a snapshot.

    Release branches produce plain releases; every other branch produces a
    snapshot of ``version`` tagged with ``commit``. With
    ``allow_snapshot_on_main`` a snapshot is produced on release branches too.
    """
    if isinstance(version, str):
        version = parse_version(version)
    on_release_branch = branch in set(release_branches)
    if not snapshot or (on_release_branch and not allow_snapshot_on_main):
        return Release(version)
    return Snapshot(SnapshotVersion.for_commit(version, commit, hash_length))
