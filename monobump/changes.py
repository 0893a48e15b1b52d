"""Change detection.

Maps changed file paths to the packages that own them, and attributes
commits to packages by the files each commit touched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .commits import CommitParser, ParsedCommit
from .errors import GitUnavailableError
from .git import Commit, GitFacade
from .workspace import Workspace

logger = logging.getLogger(__name__)


def map_files_to_packages(paths: Iterable[str], workspace: Workspace) -> dict[str, list[str]]:
    """Group changed file paths by owning package.

    Each path goes to the package whose directory is the longest prefix of
    it. Paths under no member go to the root package when one exists and
    are otherwise dropped with a warning. Output keys are sorted, and each
    path list is sorted and de-duplicated, so the result does not depend on
    input order.
    """
    owned: dict[str, set[str]] = {}
    for path in paths:
        path = path.strip()
        if not path:
            continue
        pkg = workspace.package_for_path(path)
        if pkg is None:
            logger.warning("Changed file %s does not belong to any package", path)
            continue
        owned.setdefault(pkg.name, set()).add(path)
    return {name: sorted(files) for name, files in sorted(owned.items())}


@dataclass
class PackageCommits:
    """Commits attributed to one package, with the files that tied them."""

    package: str
    commits: list[ParsedCommit] = field(default_factory=list)
    files: dict[str, list[str]] = field(default_factory=dict)


def attribute_commits(
    commits: Iterable[Commit],
    git: GitFacade,
    workspace: Workspace,
    parser: CommitParser | None = None,
) -> dict[str, PackageCommits]:
    """Attribute each commit to every package owning a file it changed.

    Attribution is by touched files only; scopes in the message are not
    used. Commits keep their input order within each package.
    """
    parser = parser or CommitParser()
    result: dict[str, PackageCommits] = {}
    for commit in commits:
        files = git.files_changed_in(commit.sha)
        owners = map_files_to_packages(files, workspace)
        if not owners:
            continue
        parsed = parser.parse(commit)
        for name, owned_files in owners.items():
            entry = result.setdefault(name, PackageCommits(package=name))
            entry.commits.append(parsed)
            entry.files[commit.sha] = owned_files
    return dict(sorted(result.items()))


def changed_packages(
    git: GitFacade, workspace: Workspace, from_ref: str, to_ref: str = "HEAD"
) -> dict[str, list[str]] | None:
    """Packages with files changed between two refs.

    Returns None when git cannot answer, so callers can fall back to
    treating every package as potentially affected.
    """
    try:
        files = git.files_changed_between(from_ref, to_ref)
    except GitUnavailableError as e:
        logger.warning("Cannot diff %s..%s: %s", from_ref, to_ref, e)
        return None
    return map_files_to_packages(files, workspace)
