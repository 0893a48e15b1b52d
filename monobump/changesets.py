"""Branch-scoped changeset records.

A changeset collects the version changes a feature branch intends to
release. Each active changeset is a single file under the changeset
directory named after the branch (``feature/login`` is stored as
``feature-login.json``); released changesets move to ``history/`` with a
timestamp suffix.

Layout::

    changesets/
        feature-login.json
        history/
            fix-typo-20240102T030405000000Z.json
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import tomlkit
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tomlkit.exceptions import ParseError as TOMLParseError

from .config import ChangesetFormat, ReleaseConfig
from .errors import (
    ChangesetExistsError,
    ChangesetNotFoundError,
    ChangesetValidationError,
    InvalidBranchError,
    InvalidEnvironmentError,
)
from .fs import read_text_if_exists, write_text_atomic
from .planner import Change, Plan, ReasonKind, VersionSuggestion
from .versions import BumpKind

logger = logging.getLogger(__name__)

HISTORY_DIR = "history"
EXTENSIONS: dict[str, str] = {"json": ".json", "yaml": ".yaml", "toml": ".toml"}
_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
_INVALID_BRANCH_RE = re.compile(r"[\s~^:?*\[\\]|\.\.|@\{|//")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeEntry(BaseModel):
    type: str
    description: str
    breaking: bool = False
    commit: str | None = None


class PackageReasonKind(str, Enum):
    DIRECT = "direct"
    DEPENDENCY = "dependency"
    MANUAL = "manual"
    CYCLE = "cycle"


class PackageReason(BaseModel):
    kind: PackageReasonKind = PackageReasonKind.DIRECT
    detail: str | None = None


class ChangesetPackage(BaseModel):
    """One package's intended bump. ``from``/``to`` are filled when applied."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    bump: BumpKind
    from_version: str = Field(default="", alias="from")
    to_version: str = Field(default="", alias="to")
    reason: PackageReason = Field(default_factory=PackageReason)
    changes: list[ChangeEntry] = Field(default_factory=list)


class ReleaseInfo(BaseModel):
    """How and when an archived changeset was released."""

    applied_at: datetime
    applied_by: str
    git_commit: str
    versions: dict[str, str] = Field(default_factory=dict)


class Changeset(BaseModel):
    branch: str
    author: str
    created_at: datetime
    updated_at: datetime
    target_environments: list[str] = Field(default_factory=list)
    packages: list[ChangesetPackage] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)
    release: ReleaseInfo | None = None

    @property
    def status(self) -> str:
        """``released`` once archived with release info, ``ready`` when it
        names at least one package, ``draft`` otherwise."""
        if self.release is not None:
            return "released"
        return "ready" if self.packages else "draft"

    def package_names(self) -> list[str]:
        return [p.name for p in self.packages]

    def get_package(self, name: str) -> ChangesetPackage | None:
        for pkg in self.packages:
            if pkg.name == name:
                return pkg
        return None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def safe_branch_name(branch: str) -> str:
    return branch.replace("/", "-")


def validate_branch(branch: str, release_branches: Iterable[str]) -> None:
    """Reject names git would not accept and release branches.

    Raises:
        InvalidBranchError: If ``branch`` cannot hold a changeset.
    """
    if not branch or not branch.strip():
        raise InvalidBranchError(branch, "branch name is empty")
    if branch.startswith(("-", "/")) or branch.endswith(("/", ".", ".lock")):
        raise InvalidBranchError(branch, "not a valid git branch name")
    if _INVALID_BRANCH_RE.search(branch):
        raise InvalidBranchError(branch, "not a valid git branch name")
    if branch == "HEAD":
        raise InvalidBranchError(branch, "detached HEAD has no changeset")
    if branch in set(release_branches):
        raise InvalidBranchError(branch, "changesets cannot be created on release branches")


def dump_changeset(changeset: Changeset, fmt: ChangesetFormat) -> str:
    data = changeset.to_dict()
    if fmt == "json":
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    if fmt == "toml":
        return tomlkit.dumps(data)
    raise ValueError(f"Unknown changeset format: {fmt}")


def parse_changeset(text: str, fmt: ChangesetFormat, path: Path | None = None) -> Changeset:
    """Parse a serialized changeset.

    Raises:
        ChangesetValidationError: If the text is malformed or does not match
            the changeset schema.
    """
    try:
        if fmt == "json":
            data = json.loads(text)
        elif fmt == "yaml":
            data = yaml.safe_load(text)
        elif fmt == "toml":
            data = tomlkit.parse(text).unwrap()
        else:
            raise ValueError(f"Unknown changeset format: {fmt}")
    except (json.JSONDecodeError, yaml.YAMLError, TOMLParseError) as e:
        raise ChangesetValidationError(f"Malformed changeset {path or ''}: {e}", path=path) from e

    try:
        return Changeset.model_validate(data)
    except ValidationError as e:
        raise ChangesetValidationError(f"Invalid changeset {path or ''}: {e}", path=path) from e


def _format_for(path: Path) -> ChangesetFormat | None:
    for fmt, ext in EXTENSIONS.items():
        if path.suffix == ext:
            return fmt  # type: ignore[return-value]
    return None


def _archive_stamp(path: Path) -> datetime | None:
    _, _, stamp = path.stem.rpartition("-")
    try:
        return datetime.strptime(stamp, _STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class ChangesetStore:
    """Reads and writes changeset files under one directory.

    Args:
        directory: The changeset directory (created on first write).
        fmt: Serialization for new records. Existing records are read in
            whichever supported format they were written in.
        release_branches: Branches that may never hold a changeset.
        available_environments: Allowed target environments; empty allows
            any.
        known_packages: Workspace package names; when given, records naming
            other packages are rejected.
        clock: Source of timestamps.
    """

    def __init__(
        self,
        directory: Path,
        *,
        fmt: ChangesetFormat = "json",
        release_branches: Iterable[str] = ("main", "master", "develop"),
        available_environments: Iterable[str] = (),
        known_packages: Iterable[str] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.directory = Path(directory)
        self.fmt = fmt
        self.release_branches = list(release_branches)
        self.available_environments = list(available_environments)
        self.known_packages = set(known_packages) if known_packages is not None else None
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: ReleaseConfig,
        root: Path,
        known_packages: Iterable[str] | None = None,
        clock: Clock = utc_now,
    ) -> ChangesetStore:
        return cls(
            config.changeset_path(root),
            fmt=config.changeset_format,
            release_branches=config.release_branches,
            available_environments=config.available_environments,
            known_packages=known_packages,
            clock=clock,
        )

    @property
    def history_dir(self) -> Path:
        return self.directory / HISTORY_DIR

    def path_for(self, branch: str) -> Path:
        return self.directory / f"{safe_branch_name(branch)}{EXTENSIONS[self.fmt]}"

    def _find(self, branch: str) -> Path | None:
        preferred = self.path_for(branch)
        if preferred.is_file():
            return preferred
        safe = safe_branch_name(branch)
        for ext in EXTENSIONS.values():
            candidate = self.directory / f"{safe}{ext}"
            if candidate.is_file():
                return candidate
        return None

    def _read(self, path: Path) -> Changeset | None:
        text = read_text_if_exists(path)
        if text is None:
            return None
        fmt = _format_for(path)
        if fmt is None:
            return None
        return parse_changeset(text, fmt, path)

    def _write(self, changeset: Changeset, path: Path) -> None:
        write_text_atomic(path, dump_changeset(changeset, _format_for(path) or self.fmt))
        logger.debug("Wrote changeset %s", path)

    def validate(self, changeset: Changeset, *, ready: bool = False) -> None:
        """Check a record before it is written.

        Raises:
            ChangesetValidationError: Unknown packages, or no packages when
                ``ready``.
            InvalidEnvironmentError: Environments outside the allow-list.
        """
        if self.known_packages is not None:
            unknown = sorted(set(changeset.package_names()) - self.known_packages)
            if unknown:
                raise ChangesetValidationError(
                    f"Changeset for {changeset.branch!r} names unknown package(s): "
                    f"{', '.join(unknown)}"
                )
        if self.available_environments:
            bad = [e for e in changeset.target_environments if e not in self.available_environments]
            if bad:
                raise InvalidEnvironmentError(bad, self.available_environments)
        if ready and not changeset.packages:
            raise ChangesetValidationError(
                f"Changeset for {changeset.branch!r} has no packages"
            )

    def exists(self, branch: str) -> bool:
        return self._find(branch) is not None

    def create(
        self,
        branch: str,
        author: str,
        target_environments: Iterable[str] = (),
        packages: Iterable[ChangesetPackage] = (),
        commits: Iterable[str] = (),
    ) -> Changeset:
        """Create the changeset for ``branch``.

        Raises:
            InvalidBranchError: For release branches and malformed names.
            ChangesetExistsError: If the branch already has one.
        """
        validate_branch(branch, self.release_branches)
        existing = self._find(branch)
        if existing is not None:
            raise ChangesetExistsError(branch, path=existing)
        now = self.clock()
        changeset = Changeset(
            branch=branch,
            author=author,
            created_at=now,
            updated_at=now,
            target_environments=list(target_environments),
            packages=list(packages),
            commits=list(commits),
        )
        self.validate(changeset)
        self._write(changeset, self.path_for(branch))
        logger.info("Created changeset for %s", branch)
        return changeset

    def load(self, branch: str) -> Changeset:
        path = self._find(branch)
        changeset = self._read(path) if path is not None else None
        if changeset is None:
            raise ChangesetNotFoundError(branch, path=self.path_for(branch))
        return changeset

    def update(self, changeset: Changeset) -> Changeset:
        """Write ``changeset`` back, refreshing ``updated_at``.

        The new ``updated_at`` is always later than the previous one, even
        when the clock has not advanced.

        Raises:
            ChangesetNotFoundError: If the branch has no changeset on disk.
        """
        path = self._find(changeset.branch)
        if path is None:
            raise ChangesetNotFoundError(changeset.branch, path=self.path_for(changeset.branch))
        now = self.clock()
        floor = max(changeset.updated_at, changeset.created_at)
        if now <= floor:
            now = floor + timedelta(microseconds=1)
        updated = changeset.model_copy(update={"updated_at": now})
        self.validate(updated)
        self._write(updated, path)
        return updated

    def delete(self, branch: str) -> None:
        path = self._find(branch)
        if path is None:
            raise ChangesetNotFoundError(branch, path=self.path_for(branch))
        path.unlink()
        logger.info("Deleted changeset for %s", branch)

    def _next_stamp(self, safe: str) -> datetime:
        moment = self.clock().astimezone(timezone.utc)
        if self.history_dir.is_dir():
            previous = [
                stamp
                for p in self.history_dir.glob(f"{safe}-*")
                if (stamp := _archive_stamp(p)) is not None
            ]
            if previous and moment <= max(previous):
                moment = max(previous) + timedelta(microseconds=1)
        return moment

    def archive(self, branch: str, release_info: ReleaseInfo | None = None) -> Path:
        """Move the changeset into history.

        Returns:
            Path of the archived record.
        """
        path = self._find(branch)
        changeset = self._read(path) if path is not None else None
        if path is None or changeset is None:
            raise ChangesetNotFoundError(branch, path=self.path_for(branch))
        if release_info is not None:
            changeset = changeset.model_copy(update={"release": release_info})

        safe = safe_branch_name(branch)
        stamp = self._next_stamp(safe).strftime(_STAMP_FORMAT)
        target = self.history_dir / f"{safe}-{stamp}{path.suffix}"
        self._write(changeset, target)
        path.unlink()
        logger.info("Archived changeset for %s to %s", branch, target)
        return target

    def _active_paths(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p for p in self.directory.iterdir() if p.is_file() and _format_for(p) is not None
        )

    def list(
        self,
        package: str | None = None,
        status: str | None = None,
        environment: str | None = None,
    ) -> list[Changeset]:
        """Active changesets, optionally filtered, sorted by branch."""
        result = []
        for path in self._active_paths():
            changeset = self._read(path)
            if changeset is None:
                continue
            if package is not None and changeset.get_package(package) is None:
                continue
            if status is not None and changeset.status != status:
                continue
            if environment is not None and environment not in changeset.target_environments:
                continue
            result.append(changeset)
        return sorted(result, key=lambda c: c.branch)

    def history(self, package: str | None = None) -> list[Changeset]:
        """Archived changesets, newest first."""
        if not self.history_dir.is_dir():
            return []
        entries: list[tuple[datetime, Changeset]] = []
        for path in self.history_dir.iterdir():
            if not path.is_file() or _format_for(path) is None:
                continue
            stamp = _archive_stamp(path)
            changeset = self._read(path)
            if changeset is None or stamp is None:
                continue
            if package is not None and changeset.get_package(package) is None:
                continue
            entries.append((stamp, changeset))
        entries.sort(key=lambda item: item[0], reverse=True)
        return [c for _, c in entries]


def _package_reason(suggestion: VersionSuggestion) -> PackageReason:
    by_kind = {r.kind: r for r in suggestion.reasons}
    if ReasonKind.MANUAL in by_kind:
        return PackageReason(kind=PackageReasonKind.MANUAL, detail=by_kind[ReasonKind.MANUAL].detail)
    direct = (ReasonKind.BREAKING, ReasonKind.FEATURE, ReasonKind.FIX, ReasonKind.OTHER)
    for kind in direct:
        if kind in by_kind:
            return PackageReason(kind=PackageReasonKind.DIRECT, detail=by_kind[kind].detail)
    if ReasonKind.CYCLE in by_kind:
        return PackageReason(kind=PackageReasonKind.CYCLE, detail=by_kind[ReasonKind.CYCLE].detail)
    if ReasonKind.DEPENDENCY in by_kind:
        return PackageReason(
            kind=PackageReasonKind.DEPENDENCY, detail=by_kind[ReasonKind.DEPENDENCY].detail
        )
    return PackageReason()


def _entry(change: Change) -> ChangeEntry:
    return ChangeEntry(
        type=change.type.value,
        description=change.description,
        breaking=change.breaking,
        commit=change.commit,
    )


def apply_plan_to_changeset(changeset: Changeset, plan: Plan) -> Changeset:
    """Resolve ``from``/``to`` for every changeset package from ``plan``.

    Packages the plan bumps but the changeset does not list yet are added
    with the reason the plan gives.
    """
    packages = []
    seen = set()
    for pkg in changeset.packages:
        suggestion = plan.get(pkg.name)
        if suggestion is not None:
            pkg = pkg.model_copy(
                update={
                    "from_version": suggestion.from_version,
                    "to_version": suggestion.to_version,
                    "bump": suggestion.bump,
                }
            )
        packages.append(pkg)
        seen.add(pkg.name)
    for suggestion in plan.suggestions:
        if suggestion.package in seen:
            continue
        packages.append(
            ChangesetPackage(
                name=suggestion.package,
                bump=suggestion.bump,
                from_version=suggestion.from_version,
                to_version=suggestion.to_version,
                reason=_package_reason(suggestion),
            )
        )
    return changeset.model_copy(update={"packages": packages})


def changeset_from_plan(
    branch: str,
    author: str,
    plan: Plan,
    changes: Iterable[Change] = (),
    commits: Iterable[str] = (),
    target_environments: Iterable[str] = (),
    now: datetime | None = None,
) -> Changeset:
    """Build a new changeset record describing ``plan``."""
    now = now or utc_now()
    entries: dict[str, list[ChangeEntry]] = {}
    for change in changes:
        entries.setdefault(change.package, []).append(_entry(change))
    packages = [
        ChangesetPackage(
            name=s.package,
            bump=s.bump,
            from_version=s.from_version,
            to_version=s.to_version,
            reason=_package_reason(s),
            changes=entries.get(s.package, []),
        )
        for s in plan.suggestions
    ]
    return Changeset(
        branch=branch,
        author=author,
        created_at=now,
        updated_at=now,
        target_environments=list(target_environments),
        packages=packages,
        commits=list(commits),
    )
