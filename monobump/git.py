"""Read-only git access.

:class:`GitFacade` is the narrow interface the core depends on;
:class:`GitRepository` implements it by shelling out to the git CLI.
Every failure (git missing, not a repository, unknown ref) surfaces as
:class:`~monobump.errors.GitUnavailableError` so callers can downgrade
instead of aborting.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import GitUnavailableError
from .shell import git

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"


@dataclass(frozen=True)
class Commit:
    """A commit as read from git, before message parsing."""

    sha: str
    message: str
    author: str
    date: datetime

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0].strip()


@dataclass(frozen=True)
class Tag:
    name: str
    sha: str


@runtime_checkable
class GitFacade(Protocol):
    def current_branch(self) -> str: ...

    def current_sha(self) -> str: ...

    def list_staged_files(self) -> list[str]: ...

    def files_changed_in(self, sha: str) -> list[str]: ...

    def files_changed_between(self, from_ref: str, to_ref: str) -> list[str]: ...

    def commits_between(
        self, from_ref: str | None = None, to_ref: str | None = None
    ) -> list[Commit]: ...

    def list_tags(self, local: bool = True) -> list[Tag]: ...

    def get_last_tag_matching(self, pattern: str) -> Tag | None: ...

    def remote_url(self, remote: str = "origin") -> str | None: ...


class GitRepository:
    """Git façade backed by the ``git`` command line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _git(self, *args: str) -> str:
        try:
            return git(*args, cwd=self.path)
        except FileNotFoundError as e:
            raise GitUnavailableError("git executable not found") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise GitUnavailableError(
                f"git {' '.join(args)} failed: {stderr or f'exit code {e.returncode}'}",
                path=self.path,
            ) from e

    def _lines(self, *args: str) -> list[str]:
        return [line for line in self._git(*args).splitlines() if line.strip()]

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD")

    def current_sha(self) -> str:
        return self._git("rev-parse", "HEAD")

    def list_staged_files(self) -> list[str]:
        return self._lines("diff", "--cached", "--name-only")

    def files_changed_in(self, sha: str) -> list[str]:
        return self._lines("diff-tree", "--no-commit-id", "--name-only", "-r", "--root", sha)

    def files_changed_between(self, from_ref: str, to_ref: str) -> list[str]:
        return self._lines("diff", "--name-only", from_ref, to_ref)

    def commits_between(
        self, from_ref: str | None = None, to_ref: str | None = None
    ) -> list[Commit]:
        """Commits reachable from ``to_ref`` but not ``from_ref``, oldest first.

        With ``from_ref`` None the whole history up to ``to_ref`` is listed.
        """
        fmt = _FIELD_SEP.join(["%H", "%an <%ae>", "%aI", "%B"]) + _RECORD_SEP
        target = to_ref or "HEAD"
        rev = f"{from_ref}..{target}" if from_ref else target
        output = self._git("log", "--reverse", f"--format={fmt}", rev)
        return parse_log(output)

    def list_tags(self, local: bool = True) -> list[Tag]:
        if local:
            fmt = f"%(refname:short){_FIELD_SEP}%(objectname){_FIELD_SEP}%(*objectname)"
            tags = []
            for line in self._lines("for-each-ref", "refs/tags", f"--format={fmt}"):
                name, obj, peeled = (line.split(_FIELD_SEP) + ["", ""])[:3]
                tags.append(Tag(name=name, sha=peeled or obj))
            return tags

        peeled: dict[str, str] = {}
        plain: dict[str, str] = {}
        for line in self._lines("ls-remote", "--tags", "origin"):
            sha, _, ref = line.partition("\t")
            name = ref.removeprefix("refs/tags/")
            if name.endswith("^{}"):
                peeled[name[:-3]] = sha
            else:
                plain[name] = sha
        return [Tag(name=n, sha=peeled.get(n, s)) for n, s in sorted(plain.items())]

    def get_last_tag_matching(self, pattern: str) -> Tag | None:
        """Most recent tag matching a glob, sorted by version."""
        names = self._lines("tag", "--list", pattern, "--sort=-v:refname")
        if not names:
            return None
        sha = self._git("rev-list", "-n", "1", names[0])
        return Tag(name=names[0], sha=sha)

    def remote_url(self, remote: str = "origin") -> str | None:
        try:
            return self._git("remote", "get-url", remote) or None
        except GitUnavailableError:
            return None


def parse_log(output: str) -> list[Commit]:
    """Parse ``git log`` output written with field/record separators."""
    commits: list[Commit] = []
    for record in output.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        parts = record.split(_FIELD_SEP)
        if len(parts) != 4:
            continue
        sha, author, date, message = parts
        commits.append(
            Commit(
                sha=sha.strip(),
                message=message.strip(),
                author=author.strip(),
                date=datetime.fromisoformat(date.strip()),
            )
        )
    return commits
