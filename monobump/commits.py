"""Conventional commit parsing.

Commit messages are parsed into one of two shapes:

- :class:`ConventionalCommit` for messages following
  ``type(scope)!: description`` (optionally with body and footers)
- :class:`UnstructuredCommit` for anything else; these still count as
  changes and fall back to the configured default bump

Classification (bump and changelog section) lives on the commit objects
and is driven by :class:`~monobump.config.ReleaseConfig` type tables.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from .config import ReleaseConfig, TypeConfig
from .git import Commit
from .versions import BumpKind, max_bump

logger = logging.getLogger(__name__)

HEADER_RE = re.compile(
    r"^(?P<type>[A-Za-z][\w-]*)"
    r"(?:\((?P<scope>[^()\r\n]*)\))?"
    r"(?P<bang>!)?"
    r": (?P<description>\S.*)$"
)
REVERT_RE = re.compile(r'^Revert "(?P<inner>.+)"\s*$')
FOOTER_RE = re.compile(r"^(?P<token>BREAKING[ -]CHANGE|[\w-]+)(?:: | #)(?P<value>.*)$")
BREAKING_TOKENS = ("BREAKING CHANGE", "BREAKING-CHANGE")

STANDARD_TYPES = (
    "feat",
    "fix",
    "docs",
    "style",
    "refactor",
    "perf",
    "test",
    "build",
    "ci",
    "chore",
    "revert",
)


@dataclass(frozen=True)
class ConventionalCommit:
    """A commit whose message follows the conventional commit grammar.

    Attributes:
        sha: Full commit SHA.
        type: Lowercased commit type (``feat``, ``fix``, or a custom type).
        description: Text after ``type(scope)!: ``.
        scope: Optional scope between parentheses.
        body: Free-form paragraphs between header and footers.
        footers: ``(token, value)`` pairs in message order.
        breaking: True for ``!`` headers or ``BREAKING CHANGE`` footers.
        author, date: Taken from git when available.
    """

    sha: str
    type: str
    description: str
    scope: str | None = None
    body: str | None = None
    footers: tuple[tuple[str, str], ...] = ()
    breaking: bool = False
    author: str = ""
    date: datetime | None = None
    raw: str = field(default="", compare=False)

    @property
    def is_conventional(self) -> bool:
        return True

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def is_custom_type(self) -> bool:
        return self.type not in STANDARD_TYPES

    @property
    def breaking_description(self) -> str:
        """Footer text explaining the break, else the description."""
        for token, value in self.footers:
            if token in BREAKING_TOKENS:
                return value
        return self.description

    def classify(self, config: ReleaseConfig) -> TypeConfig:
        return config.type_config(self.type)

    def bump(self, config: ReleaseConfig) -> BumpKind:
        if self.breaking:
            return BumpKind.MAJOR
        return self.classify(config).bump

    def header(self) -> str:
        return render_header(self)


@dataclass(frozen=True)
class UnstructuredCommit:
    """A commit whose message does not follow the convention."""

    sha: str
    raw: str
    author: str = ""
    date: datetime | None = None

    type = None
    scope = None
    breaking = False
    footers: tuple[tuple[str, str], ...] = ()

    @property
    def is_conventional(self) -> bool:
        return False

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def description(self) -> str:
        return self.raw.split("\n", 1)[0].strip()

    @property
    def breaking_description(self) -> str:
        return self.description

    def classify(self, config: ReleaseConfig) -> TypeConfig:
        return config.type_config(None)

    def bump(self, config: ReleaseConfig) -> BumpKind:
        return config.default_bump


ParsedCommit = ConventionalCommit | UnstructuredCommit


def _split_body_and_footers(rest: str) -> tuple[str | None, list[tuple[str, str]]]:
    """Separate trailing footer paragraphs from the body.

    A paragraph is a footer paragraph when its first line looks like a
    footer (``Token: value`` or ``Token #value``). Lines that do not start a
    new footer continue the previous footer's value.
    """
    paragraphs = [p for p in re.split(r"\n\s*\n", rest.strip("\n")) if p.strip()]
    footer_paragraphs: list[str] = []
    while paragraphs and FOOTER_RE.match(paragraphs[-1].splitlines()[0]):
        footer_paragraphs.insert(0, paragraphs.pop())

    footers: list[tuple[str, str]] = []
    for paragraph in footer_paragraphs:
        for line in paragraph.splitlines():
            match = FOOTER_RE.match(line)
            if match:
                footers.append((match.group("token"), match.group("value").strip()))
            elif footers:
                token, value = footers[-1]
                footers[-1] = (token, f"{value}\n{line.strip()}".strip())

    body = "\n\n".join(p.strip() for p in paragraphs) or None
    return body, footers


def parse_message(
    message: str, sha: str = "", author: str = "", date: datetime | None = None
) -> ParsedCommit:
    """Parse a full commit message.

    Git's default revert subject (``Revert "feat: x"``) is read as a
    ``revert`` commit describing the reverted header.
    """
    text = message.replace("\r\n", "\n").strip()
    header, _, rest = text.partition("\n")
    header = header.strip()

    revert = REVERT_RE.match(header)
    if revert:
        _, footers = _split_body_and_footers(rest)
        return ConventionalCommit(
            sha=sha,
            type="revert",
            description=revert.group("inner"),
            body=rest.strip() or None,
            footers=tuple(footers),
            author=author,
            date=date,
            raw=message,
        )

    match = HEADER_RE.match(header)
    if not match:
        return UnstructuredCommit(sha=sha, raw=message, author=author, date=date)

    body, footers = _split_body_and_footers(rest)
    breaking = bool(match.group("bang")) or any(t in BREAKING_TOKENS for t, _ in footers)
    scope = match.group("scope")
    return ConventionalCommit(
        sha=sha,
        type=match.group("type").lower(),
        description=match.group("description").strip(),
        scope=scope.strip() if scope and scope.strip() else None,
        body=body,
        footers=tuple(footers),
        breaking=breaking,
        author=author,
        date=date,
        raw=message,
    )


def render_header(commit: ConventionalCommit) -> str:
    """Render ``type(scope)!: description``."""
    scope = f"({commit.scope})" if commit.scope else ""
    bang = "!" if commit.breaking else ""
    return f"{commit.type}{scope}{bang}: {commit.description}"


class CommitParser:
    """Parses git commits, caching results by SHA for one invocation."""

    def __init__(self) -> None:
        self._cache: dict[str, ParsedCommit] = {}

    def parse(self, commit: Commit) -> ParsedCommit:
        cached = self._cache.get(commit.sha)
        if cached is not None:
            return cached
        parsed = parse_message(commit.message, sha=commit.sha, author=commit.author, date=commit.date)
        if not parsed.is_conventional:
            logger.warning("Commit %s is not a conventional commit: %s", commit.short_sha, commit.subject)
        self._cache[commit.sha] = parsed
        return parsed

    def parse_all(self, commits: Iterable[Commit]) -> list[ParsedCommit]:
        return [self.parse(c) for c in commits]


def version_bump_for(commits: Iterable[ParsedCommit], config: ReleaseConfig) -> BumpKind:
    """Strongest bump required by ``commits``.

    Order-independent: the result is the maximum over the commits, and any
    breaking commit makes it ``MAJOR``.
    """
    return max_bump(c.bump(config) for c in commits)


def get_breaking_changes(commits: Iterable[ParsedCommit]) -> list[ParsedCommit]:
    return [c for c in commits if c.breaking]


def group_commits_by_section(
    commits: Iterable[ParsedCommit], config: ReleaseConfig
) -> dict[str, list[ParsedCommit]]:
    """Partition commits into changelog sections.

    Sections appear in the order of the configured type table, then
    "Other"; commits keep their input order within a section. Types
    configured with ``show = false`` are left out.
    """
    order = list(dict.fromkeys(t.section for t in config.types.values()))
    grouped: dict[str, list[ParsedCommit]] = {}
    for commit in commits:
        rule = commit.classify(config)
        if not rule.show:
            continue
        grouped.setdefault(rule.section, []).append(commit)

    def rank(section: str) -> tuple[int, str]:
        return (order.index(section), "") if section in order else (len(order), section)

    return {section: grouped[section] for section in sorted(grouped, key=rank)}
