"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import yaml

from monobump.errors import GitUnavailableError
from monobump.git import Commit, Tag


def _write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n")


@pytest.fixture
def make_workspace(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a JavaScript workspace under ``tmp_path``.

    ``packages`` maps a package name to its manifest fields (at least
    ``version``); each package lives in ``packages/<name>``.
    """

    def _make(
        packages: dict[str, dict[str, Any]],
        *,
        manager: str = "npm",
        root_fields: dict[str, Any] | None = None,
    ) -> Path:
        root_doc: dict[str, Any] = {"private": True, **(root_fields or {})}
        if manager == "pnpm":
            (tmp_path / "pnpm-workspace.yaml").write_text(
                yaml.safe_dump({"packages": ["packages/*"]})
            )
        elif manager == "yarn":
            root_doc["workspaces"] = {"packages": ["packages/*"]}
            (tmp_path / "yarn.lock").write_text("")
        else:
            root_doc["workspaces"] = ["packages/*"]
        _write_json(tmp_path / "package.json", root_doc)

        for name, fields in packages.items():
            dirname = name.split("/")[-1]
            _write_json(tmp_path / "packages" / dirname / "package.json", {"name": name, **fields})
        return tmp_path

    return _make


@pytest.fixture
def abc_workspace(make_workspace: Callable[..., Path]) -> Path:
    """a@1.0.0, b@1.0.0 depending on a ^1.0.0, c@1.0.0."""
    return make_workspace(
        {
            "a": {"version": "1.0.0"},
            "b": {"version": "1.0.0", "dependencies": {"a": "^1.0.0", "lodash": "^4.17.0"}},
            "c": {"version": "1.0.0"},
        }
    )


class FakeGit:
    """In-memory implementation of the git façade."""

    def __init__(self, branch: str = "feature/login") -> None:
        self.branch = branch
        self.commits: list[Commit] = []
        self.files: dict[str, list[str]] = {}
        self.tags: dict[str, str] = {}
        self.remote: str | None = None
        self.staged: list[str] = []
        self.unavailable = False
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _check(self) -> None:
        if self.unavailable:
            raise GitUnavailableError("git is not available")

    def add_commit(self, message: str, files: list[str], author: str = "Dev <dev@example.com>") -> str:
        sha = hashlib.sha1(f"{len(self.commits)}:{message}".encode()).hexdigest()
        self._clock += timedelta(minutes=1)
        self.commits.append(Commit(sha=sha, message=message, author=author, date=self._clock))
        self.files[sha] = list(files)
        return sha

    def tag(self, name: str) -> None:
        self.tags[name] = self.commits[-1].sha

    def _index_after(self, ref: str | None) -> int:
        if ref is None:
            return 0
        sha = self.tags.get(ref, ref)
        for i, commit in enumerate(self.commits):
            if commit.sha == sha:
                return i + 1
        raise GitUnavailableError(f"unknown revision {ref}")

    def current_branch(self) -> str:
        self._check()
        return self.branch

    def current_sha(self) -> str:
        self._check()
        return self.commits[-1].sha if self.commits else "0" * 40

    def list_staged_files(self) -> list[str]:
        self._check()
        return list(self.staged)

    def files_changed_in(self, sha: str) -> list[str]:
        self._check()
        return list(self.files.get(sha, []))

    def files_changed_between(self, from_ref: str, to_ref: str) -> list[str]:
        self._check()
        changed: list[str] = []
        for commit in self.commits[self._index_after(from_ref) :]:
            changed.extend(self.files[commit.sha])
        return sorted(set(changed))

    def commits_between(self, from_ref: str | None = None, to_ref: str | None = None) -> list[Commit]:
        self._check()
        return list(self.commits[self._index_after(from_ref) :])

    def list_tags(self, local: bool = True) -> list[Tag]:
        self._check()
        return [Tag(name=n, sha=s) for n, s in sorted(self.tags.items())]

    def get_last_tag_matching(self, pattern: str) -> Tag | None:
        self._check()
        if not self.tags:
            return None
        name = list(self.tags)[-1]
        return Tag(name=name, sha=self.tags[name])

    def remote_url(self, remote: str = "origin") -> str | None:
        return self.remote


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc))
