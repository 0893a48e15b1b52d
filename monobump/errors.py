"""Exception hierarchy for monobump.

Every error raised by the core derives from :class:`MonobumpError`. Each
class carries a stable ``code`` (used in JSON reports and plan warnings)
and the process ``exit_code`` the CLI should use when it surfaces.
"""

from __future__ import annotations

from pathlib import Path


class MonobumpError(Exception):
    """Base class for all monobump errors."""

    code = "error"
    exit_code = 1

    def __init__(self, message: str, *, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = Path(path) if path is not None else None

    def to_dict(self) -> dict[str, str]:
        data = {"code": self.code, "message": self.message}
        if self.path is not None:
            data["path"] = str(self.path)
        return data


# Input errors


class InvalidVersionError(MonobumpError):
    code = "invalid_version"

    def __init__(self, version: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid version {version!r}{detail}")
        self.version = version


class InvalidRequirementError(MonobumpError):
    code = "invalid_requirement"

    def __init__(self, requirement: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid version requirement {requirement!r}{detail}")
        self.requirement = requirement


class UnsatisfiableRequirementError(MonobumpError):
    code = "unsatisfiable_requirement"


class InvalidStrategyError(MonobumpError):
    code = "invalid_strategy"
    exit_code = 3


class InvalidBranchError(MonobumpError):
    code = "invalid_branch"

    def __init__(self, branch: str, reason: str) -> None:
        super().__init__(f"Invalid branch {branch!r}: {reason}")
        self.branch = branch


class InvalidEnvironmentError(MonobumpError):
    code = "invalid_environment"

    def __init__(self, environments: list[str], allowed: list[str]) -> None:
        super().__init__(
            f"Unknown environment(s) {', '.join(environments)}; "
            f"allowed: {', '.join(allowed)}"
        )
        self.environments = environments
        self.allowed = allowed


class TemplateInvalidError(MonobumpError):
    code = "template_invalid"


class ConfigError(MonobumpError):
    code = "config_invalid"


# State errors


class DowngradeError(MonobumpError):
    code = "downgrade"
    exit_code = 3

    def __init__(self, package: str, current: str, target: str) -> None:
        super().__init__(
            f"Refusing to move {package} from {current} down to {target}"
        )
        self.package = package
        self.current = current
        self.target = target


class ChangesetExistsError(MonobumpError):
    code = "changeset_exists"

    def __init__(self, branch: str, path: Path | None = None) -> None:
        super().__init__(f"A changeset already exists for branch {branch!r}", path=path)
        self.branch = branch


class ChangesetNotFoundError(MonobumpError):
    code = "changeset_not_found"

    def __init__(self, branch: str, path: Path | None = None) -> None:
        super().__init__(f"No changeset found for branch {branch!r}", path=path)
        self.branch = branch


class ChangesetValidationError(MonobumpError):
    code = "changeset_invalid"


class WorkspaceInconsistentError(MonobumpError):
    code = "workspace_inconsistent"
    exit_code = 4


class WorkspaceNotFoundError(MonobumpError):
    code = "workspace_not_found"
    exit_code = 4


# Detection errors


class NoChangesError(MonobumpError):
    code = "no_changes"
    exit_code = 2

    def __init__(self, message: str = "No changes detected; nothing to release") -> None:
        super().__init__(message)


# I/O errors


class ManifestNotFoundError(MonobumpError):
    code = "manifest_not_found"

    def __init__(self, path: Path) -> None:
        super().__init__(f"Manifest not found: {path}", path=path)


class ManifestParseError(MonobumpError):
    code = "manifest_parse"


class ManifestWriteError(MonobumpError):
    code = "manifest_write"


class NameMissingError(MonobumpError):
    code = "name_missing"

    def __init__(self, path: Path) -> None:
        super().__init__(f"Manifest has no 'name' field: {path}", path=path)


class VersionInvalidError(MonobumpError):
    code = "version_invalid"


class AtomicWriteFailedError(MonobumpError):
    code = "atomic_write_failed"


class ChangelogWriteFailedError(MonobumpError):
    code = "changelog_write_failed"


# External-unavailable errors


class GitUnavailableError(MonobumpError):
    code = "git_unavailable"


class RegistryUnavailableError(MonobumpError):
    code = "registry_unavailable"


class CancelledError(MonobumpError):
    code = "cancelled"
    exit_code = 130
