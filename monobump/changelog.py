"""Changelog rendering and merging.

Renders one release block from the conventional commits attributed to a
package and merges it into an existing ``CHANGELOG.md`` above the most
recent release.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import date as Date
from datetime import datetime, timezone
from pathlib import Path

from .commits import ParsedCommit, group_commits_by_section
from .config import ReleaseConfig, RepoProvider
from .errors import AtomicWriteFailedError, ChangelogWriteFailedError, TemplateInvalidError
from .fs import read_text_if_exists, write_text_atomic

logger = logging.getLogger(__name__)

BREAKING_HEADING = "### ⚠ BREAKING CHANGES"

DEFAULT_HEADER = (
    "# Changelog\n"
    "\n"
    "All notable changes to this project will be documented in this file.\n"
)

_RELEASE_HEADING_RE = re.compile(r"^## (\[|v)", re.MULTILINE)
_SCP_REMOTE_RE = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")

# keep-a-changelog headings, in the order they appear
KEEP_A_CHANGELOG_SECTIONS = ("Added", "Changed", "Removed", "Fixed")


def normalize_remote_url(url: str | None) -> str | None:
    """Turn a git remote (ssh, scp-style or https) into an https base URL.

    >>> normalize_remote_url("git@github.com:acme/tools.git")
    'https://github.com/acme/tools'
    """
    if not url:
        return None
    url = url.strip()
    if "://" in url:
        scheme, _, rest = url.partition("://")
        if scheme not in ("http", "https", "ssh", "git", "git+ssh"):
            return None
        rest = rest.split("@", 1)[-1] if "@" in rest.split("/", 1)[0] else rest
        host, _, path = rest.partition("/")
        host = host.split(":", 1)[0] if scheme != "https" and scheme != "http" else host
    else:
        match = _SCP_REMOTE_RE.match(url)
        if not match:
            return None
        host, path = match.group("host"), match.group("path")
    path = path.strip("/").removesuffix(".git")
    if not host or not path:
        return None
    return f"https://{host}/{path}"


def detect_provider(url: str) -> RepoProvider:
    host = url.split("://", 1)[-1].split("/", 1)[0].lower()
    if "gitlab" in host:
        return "gitlab"
    if "bitbucket" in host:
        return "bitbucket"
    if "github" in host:
        return "github"
    return "custom"


def commit_url(base: str, sha: str, provider: RepoProvider) -> str:
    base = base.rstrip("/")
    if provider == "gitlab":
        return f"{base}/-/commit/{sha}"
    if provider == "bitbucket":
        return f"{base}/commits/{sha}"
    return f"{base}/commit/{sha}"


def render_template(template: str, **values: str) -> str:
    """Fill ``{package}``, ``{version}``, ``{date}`` and ``{repo_url}``.

    Raises:
        TemplateInvalidError: On unknown placeholders or malformed braces.
    """
    try:
        return template.format_map(values)
    except (KeyError, IndexError, ValueError) as e:
        raise TemplateInvalidError(f"Invalid changelog template {template!r}: {e}") from e


class ChangelogRenderer:
    """Renders release blocks for one repository.

    Args:
        config: Supplies the type table, template and output format.
        repo_url: https base of the repository; commit references are
            plain short SHAs when it is None.
        provider: Hosting provider used to build commit links. Detected
            from ``repo_url`` when not given.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        repo_url: str | None = None,
        provider: RepoProvider | None = None,
    ) -> None:
        self.config = config
        self.repo_url = repo_url.rstrip("/") if repo_url else None
        if provider is None:
            provider = config.repo_provider
            if self.repo_url and not config.repo_url:
                provider = detect_provider(self.repo_url)
        self.provider = provider

    def commit_ref(self, commit: ParsedCommit) -> str:
        short = commit.short_sha
        if not short:
            return ""
        if self.repo_url:
            return f"[{short}]({commit_url(self.repo_url, commit.sha, self.provider)})"
        return short

    def _line(self, text: str, commit: ParsedCommit) -> str:
        parts = [f"- {text}"]
        if commit.scope:
            parts.append(f"({commit.scope})")
        ref = self.commit_ref(commit)
        if ref:
            parts.append(ref)
        return " ".join(parts)

    def heading(self, version: str, package: str | None = None, date: Date | None = None) -> str:
        day = date or datetime.now(timezone.utc).date()
        return render_template(
            self.config.changelog_template,
            package=package or "",
            version=version,
            date=day.isoformat(),
            repo_url=self.repo_url or "",
        )

    def render(
        self,
        version: str,
        commits: Sequence[ParsedCommit],
        package: str | None = None,
        date: Date | None = None,
    ) -> str:
        """Render the release block, or "" when there is nothing to list."""
        if self.config.changelog_format == "keep-a-changelog":
            sections = self._keep_a_changelog_sections(commits)
        else:
            sections = self._conventional_sections(commits)
        if not sections:
            return ""

        lines = [self.heading(version, package, date), ""]
        for title, items in sections:
            lines.append(title)
            lines.append("")
            lines.extend(items)
            lines.append("")
        return "\n".join(lines)

    def _conventional_sections(self, commits: Sequence[ParsedCommit]) -> list[tuple[str, list[str]]]:
        sections: list[tuple[str, list[str]]] = []
        breaking = [c for c in commits if c.breaking]
        if breaking:
            sections.append(
                (BREAKING_HEADING, [self._line(c.breaking_description, c) for c in breaking])
            )
        for section, grouped in group_commits_by_section(commits, self.config).items():
            sections.append((f"### {section}", [self._line(c.description, c) for c in grouped]))
        return sections

    def _keep_a_changelog_sections(
        self, commits: Sequence[ParsedCommit]
    ) -> list[tuple[str, list[str]]]:
        buckets: dict[str, list[str]] = {name: [] for name in KEEP_A_CHANGELOG_SECTIONS}
        for commit in commits:
            rule = commit.classify(self.config)
            if not rule.show and not commit.breaking:
                continue
            if commit.breaking:
                bucket, text = "Changed", f"**BREAKING:** {commit.breaking_description}"
            elif commit.type == "feat":
                bucket, text = "Added", commit.description
            elif commit.type == "fix":
                bucket, text = "Fixed", commit.description
            elif commit.type == "revert":
                bucket, text = "Removed", commit.description
            else:
                bucket, text = "Changed", commit.description
            buckets[bucket].append(self._line(text, commit))
        return [(f"### {name}", items) for name, items in buckets.items() if items]


def merge_changelog(existing: str | None, block: str, header: str = DEFAULT_HEADER) -> str:
    """Insert ``block`` above the first previous release in ``existing``.

    A missing changelog starts from ``header``. Content that has no
    previous release heading gets the block appended at the end.
    """
    block = block.rstrip("\n") + "\n"
    if existing is None:
        return f"{header.rstrip()}\n\n{block}"
    match = _RELEASE_HEADING_RE.search(existing)
    if match is None:
        body = existing.rstrip("\n")
        return f"{body}\n\n{block}" if body else block
    start = match.start()
    return f"{existing[:start]}{block}\n{existing[start:]}"


def write_changelog(path: Path, block: str) -> bool:
    """Merge ``block`` into the changelog at ``path``.

    An empty block leaves the file untouched.

    Returns:
        True if the file was written.

    Raises:
        ChangelogWriteFailedError: If the file cannot be replaced.
    """
    if not block.strip():
        logger.debug("Nothing to add to %s", path)
        return False
    content = merge_changelog(read_text_if_exists(path), block)
    try:
        write_text_atomic(path, content)
    except AtomicWriteFailedError as e:
        raise ChangelogWriteFailedError(f"Cannot write changelog {path}: {e}", path=path) from e
    return True
